# reading_credits/demo/seed_demo_data.py

from reading_credits.config.loader import default_config
from reading_credits.core.service import CreditService
from reading_credits.storage.repository import insert_legacy_credit

service = CreditService(default_config())
service.initialize()

# Daily quota account: replenished to 10 on first use each day
service.set_quota("demo-quota", daily_quota=10, plan="daily")

# Prepaid account topped up by an admin
service.top_up("demo-prepaid", 12, note="demo top-up")

# Account that only exists in the legacy credits table
insert_legacy_credit("demo-legacy", remaining_total=3, bucket="tarot_3")

for account_id in ("demo-quota", "demo-prepaid", "demo-legacy"):
    balance = service.get_balance(account_id)
    print(f"{account_id}: {balance.amount} ({balance.source})")

print("Demo credit data inserted")
