import json
import pytest
from unittest.mock import patch, MagicMock

from onboarding.core.errors import TranslationMiss
from onboarding.mapping.translation_table import CodeTranslationTable, MappingRegistry, TranslationRow
from onboarding.settings import settings

ROWS = [
    TranslationRow("AGENT", "CATEGORY", "Retail", "AG01"),
    TranslationRow("AGENT", "CATEGORY", "Retail", "AG99"),
    TranslationRow("AGENT", "DIVISION", "Mobile", "10"),
    TranslationRow("CUSTOMER", "CATEGORY", "Retail", "CU05"),
    TranslationRow("CUSTOMER", "CATEGORY", "Broken", ""),
]


def test_resolve_first_match_wins():
    table = CodeTranslationTable.build(ROWS)
    assert table.candidates("AGENT", "CATEGORY", "Retail") == ["AG01", "AG99"]
    assert table.resolve("AGENT", "CATEGORY", "Retail") == "AG01"


def test_lookup_is_case_and_space_insensitive():
    table = CodeTranslationTable.build(ROWS)
    assert table.resolve(" agent ", "division", "mobile ") == "10"


def test_groups_are_scoped_by_entity_category():
    table = CodeTranslationTable.build(ROWS)
    assert table.resolve("CUSTOMER", "CATEGORY", "Retail") == "CU05"
    with pytest.raises(TranslationMiss) as exc:
        table.resolve("CUSTOMER", "DIVISION", "Mobile")
    assert exc.value.group_key == "DIVISION"
    assert exc.value.source_value == "Mobile"


def test_rows_without_code_are_dropped():
    table = CodeTranslationTable.build(ROWS)
    assert len(table) == 4
    assert table.summary() == {"AGENT": {"CATEGORY": 2, "DIVISION": 1}, "CUSTOMER": {"CATEGORY": 1}}
    with pytest.raises(TranslationMiss):
        table.resolve("CUSTOMER", "CATEGORY", "Broken")


def test_row_from_dict():
    row = TranslationRow.from_dict({"entityCategory": "AGENT", "groupKey": "SALES_ORG",
                                    "sourceValue": "North", "externalCode": "1000", "extra": "x"})
    assert row == TranslationRow("AGENT", "SALES_ORG", "North", "1000")


def test_empty_table_misses_everything():
    with pytest.raises(TranslationMiss):
        CodeTranslationTable.empty().resolve("AGENT", "CATEGORY", "Retail")


def test_registry_swap_keeps_old_snapshot_intact():
    registry = MappingRegistry()
    old = registry.swap(ROWS)
    new = registry.swap([TranslationRow("AGENT", "CATEGORY", "Retail", "AG77")])

    assert old.resolve("AGENT", "CATEGORY", "Retail") == "AG01"
    assert new.resolve("AGENT", "CATEGORY", "Retail") == "AG77"
    assert registry.current() is new


@patch("onboarding.mapping.translation_table.get_redis")
def test_registry_reload_from_redis(mock_get_redis):
    mock_redis = MagicMock()
    mock_get_redis.return_value = mock_redis
    mock_redis.get.return_value = json.dumps([
        {"entityCategory": "AGENT", "groupKey": "CATEGORY", "sourceValue": "Retail", "externalCode": "AG01"},
    ])

    registry = MappingRegistry()
    table = registry.current()

    mock_redis.get.assert_called_with(settings.MZ_MAPPING_KEY)
    assert table.resolve("AGENT", "CATEGORY", "Retail") == "AG01"


@patch("onboarding.mapping.translation_table.get_redis")
def test_registry_reload_failure_keeps_previous_table(mock_get_redis):
    registry = MappingRegistry()
    before = registry.swap(ROWS)

    mock_redis = MagicMock()
    mock_get_redis.return_value = mock_redis
    mock_redis.get.return_value = '{"not": "a list"}'

    assert registry.reload() is before
    assert registry.current() is before


@patch("onboarding.mapping.translation_table.get_redis")
def test_registry_refreshes_after_ttl(mock_get_redis):
    mock_redis = MagicMock()
    mock_get_redis.return_value = mock_redis
    mock_redis.get.return_value = "[]"

    registry = MappingRegistry()
    registry.swap(ROWS)
    registry._loaded_at -= 10_000

    with patch.object(settings, "MZ_MAPPING_REFRESH_SEC", 60):
        table = registry.current()

    assert len(table) == 0
    assert mock_redis.get.called
