import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ums_app import create_app, get_ledger

# Cron-friendly one-shot sweep; leave PAYMENT_SWEEP_INTERVAL=0 on the web process if you use this
os.environ.setdefault("PAYMENT_SWEEP_INTERVAL", "0")
app = create_app()

with app.app_context():
    removed = get_ledger().sweep_expired_payments()
    print(f"Removed {removed} expired payment(s).")
