"""
Seed the MZ mapping (domain value -> CM code) in Redis so request building can
resolve relatedParty codes. Rows are kept in first-seen order; when a source
value appears twice in a group the first row wins.
This script is idempotent and safe to run in local/dev/CI.
"""
import json
import os
from redis import Redis

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
KEY = os.getenv("MZ_MAPPING_KEY", "mz:mapping")

MZ_MAPPING = [
    # Agents
    {"entityCategory": "AGENT", "groupKey": "CATEGORY", "sourceValue": "Retail", "externalCode": "AG01"},
    {"entityCategory": "AGENT", "groupKey": "CATEGORY", "sourceValue": "Wholesale", "externalCode": "AG02"},
    {"entityCategory": "AGENT", "groupKey": "CATEGORY", "sourceValue": "Franchise", "externalCode": "AG03"},
    {"entityCategory": "AGENT", "groupKey": "DIVISION", "sourceValue": "Mobile", "externalCode": "10"},
    {"entityCategory": "AGENT", "groupKey": "DIVISION", "sourceValue": "Fixed", "externalCode": "20"},
    {"entityCategory": "AGENT", "groupKey": "SALES_ORG", "sourceValue": "North", "externalCode": "1000"},
    {"entityCategory": "AGENT", "groupKey": "SALES_ORG", "sourceValue": "South", "externalCode": "2000"},
    # Customers
    {"entityCategory": "CUSTOMER", "groupKey": "CATEGORY", "sourceValue": "Individual", "externalCode": "CU01"},
    {"entityCategory": "CUSTOMER", "groupKey": "CATEGORY", "sourceValue": "Business", "externalCode": "CU02"},
    {"entityCategory": "CUSTOMER", "groupKey": "CATEGORY", "sourceValue": "Business", "externalCode": "CU09"},
    {"entityCategory": "CUSTOMER", "groupKey": "DIVISION", "sourceValue": "Mobile", "externalCode": "10"},
    {"entityCategory": "CUSTOMER", "groupKey": "DIVISION", "sourceValue": "Fixed", "externalCode": "20"},
    {"entityCategory": "CUSTOMER", "groupKey": "SALES_ORG", "sourceValue": "North", "externalCode": "1000"},
    {"entityCategory": "CUSTOMER", "groupKey": "SALES_ORG", "sourceValue": "South", "externalCode": "2000"},
]

REQUIRED_KEYS = ("entityCategory", "groupKey", "sourceValue", "externalCode")

def main():
    r = Redis.from_url(REDIS_URL, decode_responses=True)
    # Optional: basic validation
    for row in MZ_MAPPING:
        assert all(row.get(k) for k in REQUIRED_KEYS), f"bad row: {row}"
    r.set(KEY, json.dumps(MZ_MAPPING))
    print(f"OK: wrote {len(MZ_MAPPING)} rows to {KEY} in {REDIS_URL}")

if __name__ == "__main__":
    main()
