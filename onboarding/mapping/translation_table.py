"""
MZ mapping: translation of domain values into CM codes.

A CodeTranslationTable is an immutable snapshot built from flat reference rows.
The MappingRegistry owns the active snapshot and replaces it wholesale on
refresh, so readers holding a table never see it change underneath them.
"""
from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from onboarding.core.errors import TranslationMiss
from onboarding.observability.logging import log
from onboarding.settings import settings
from onboarding.store.redis_conn import get_redis


@dataclass(frozen=True)
class TranslationRow:
    entityCategory: str
    groupKey: str
    sourceValue: str
    externalCode: str

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TranslationRow":
        return cls(
            entityCategory=str(d.get("entityCategory") or ""),
            groupKey=str(d.get("groupKey") or ""),
            sourceValue=str(d.get("sourceValue") or ""),
            externalCode=str(d.get("externalCode") or ""),
        )


def _norm(v: Optional[str]) -> str:
    return (v or "").strip().upper()


class CodeTranslationTable:
    def __init__(self, groups: Mapping[str, Mapping[str, Tuple[Tuple[str, str], ...]]]):
        self._groups = groups

    @classmethod
    def build(cls, rows: Iterable[TranslationRow]) -> "CodeTranslationTable":
        """Group by entity category, then group key; first-seen order within a group."""
        staging: Dict[str, Dict[str, List[Tuple[str, str]]]] = {}
        for row in rows:
            cat = _norm(row.entityCategory)
            grp = _norm(row.groupKey)
            if not cat or not grp or not row.externalCode:
                continue
            staging.setdefault(cat, {}).setdefault(grp, []).append((_norm(row.sourceValue), row.externalCode))
        frozen = {
            cat: MappingProxyType({grp: tuple(pairs) for grp, pairs in by_group.items()})
            for cat, by_group in staging.items()
        }
        return cls(MappingProxyType(frozen))

    @classmethod
    def empty(cls) -> "CodeTranslationTable":
        return cls(MappingProxyType({}))

    def candidates(self, entity_category: str, group_key: str, source_value: str) -> List[str]:
        pairs = self._groups.get(_norm(entity_category), {}).get(_norm(group_key), ())
        wanted = _norm(source_value)
        return [code for src, code in pairs if src == wanted]

    def resolve(self, entity_category: str, group_key: str, source_value: str) -> str:
        """First matching CM code, or TranslationMiss."""
        found = self.candidates(entity_category, group_key, source_value)
        if not found:
            raise TranslationMiss(entity_category, group_key, source_value)
        return found[0]

    def summary(self) -> Dict[str, Dict[str, int]]:
        return {cat: {grp: len(pairs) for grp, pairs in by_group.items()} for cat, by_group in self._groups.items()}

    def __len__(self) -> int:
        return sum(len(pairs) for by_group in self._groups.values() for pairs in by_group.values())


def _fetch_rows_from_redis() -> List[TranslationRow]:
    r = get_redis()
    raw = r.get(settings.MZ_MAPPING_KEY)
    parsed = json.loads(raw) if raw else []
    if not isinstance(parsed, list):
        raise ValueError(f"{settings.MZ_MAPPING_KEY} must hold a JSON list of rows")
    return [TranslationRow.from_dict(x) for x in parsed if isinstance(x, dict)]


class MappingRegistry:
    def __init__(self):
        self._table = CodeTranslationTable.empty()
        self._loaded_at = 0
        self._reload_lock = threading.Lock()

    def current(self) -> CodeTranslationTable:
        """Active snapshot, reloaded first when never loaded or older than the refresh TTL."""
        now_ts = int(time.time())
        refresh = int(settings.MZ_MAPPING_REFRESH_SEC or 0)
        if self._loaded_at == 0 or (refresh > 0 and now_ts - self._loaded_at >= refresh):
            self.reload()
        return self._table

    def swap(self, rows: Iterable[TranslationRow]) -> CodeTranslationTable:
        table = CodeTranslationTable.build(rows)
        self._table = table
        self._loaded_at = int(time.time())
        return table

    def reload(self) -> CodeTranslationTable:
        """Rebuild from Redis. On failure the previous snapshot stays active."""
        with self._reload_lock:
            try:
                rows = _fetch_rows_from_redis()
            except Exception as e:
                # Retry on the next TTL tick, not on every read
                self._loaded_at = int(time.time())
                log(event="mz_mapping_reload_failed", errorType=type(e).__name__, error=str(e)[:200])
                return self._table
            table = self.swap(rows)
        log(event="mz_mapping_reloaded", rows=len(table), categories=len(table.summary()))
        return table


mapping_registry = MappingRegistry()


def current_table() -> CodeTranslationTable:
    return mapping_registry.current()
