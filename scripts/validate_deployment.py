"""
Pre-Deploy and Smoke Test Script.

Runs the application in-process against the configured database and executes a smoke test:
1. Health Check
2. Admin payment listing and Dead Letter Queue
3. Manual reconciliation pass
4. Member outstanding-fee summary
"""

import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from fastapi.testclient import TestClient
from coop_backend.app.main import app
from coop_backend.app.core.jwt import create_access_token


def print_step(step, msg):
    print(f"[{step}] {msg}")

def fail(msg):
    print(f"❌ FAILURE: {msg}")
    sys.exit(1)

def success(msg):
    print(f"✅ {msg}")

def main():
    print("🚀 Starting Deployment Validation...")

    # Entering the client runs the lifespan: tables, worker, gateway
    with TestClient(app) as client:
        # 1. Health Check
        print_step("PRE-DEPLOY", "Checking /health...")
        response = client.get("/health")
        if response.status_code != 200:
            fail(f"Health check failed: {response.status_code} {response.text}")
        health = response.json()
        if health.get("status") != "healthy":
            print(f"⚠️ Degraded: {health}")
        else:
            success("Health check passed")

        # 2. Admin views
        print_step("AUTH", "Generating Admin Token...")
        admin_token = create_access_token(data={"sub": "deploy_bot", "role": "ADMIN", "user_id": 1})
        headers = {"Authorization": f"Bearer {admin_token}"}

        print_step("VERIFY", "Listing payment attempts...")
        res = client.get("/v1/admin/payments", headers=headers)
        if res.status_code != 200:
            fail(f"Admin payment listing failed: {res.status_code} {res.text}")
        success(f"{len(res.json())} payment attempts visible")

        res = client.get("/v1/admin/ops/dlq", params={"status": "FAILED"}, headers=headers)
        if res.status_code != 200:
            fail(f"DLQ listing failed: {res.status_code} {res.text}")
        parked = res.json()
        if parked:
            print(f"⚠️ {len(parked)} reconciliation tasks waiting in the DLQ")
        else:
            success("DLQ is empty")

        # 3. Reconciliation
        print_step("SMOKE", "Running one reconciliation pass...")
        res = client.post("/v1/admin/payments/reconcile", headers=headers)
        if res.status_code != 200:
            fail(f"Reconciliation failed: {res.status_code} {res.text}")
        success(f"Reconciliation report: {res.json()}")

        # 4. Member view
        print_step("SMOKE", "Fetching outstanding fees for member 1...")
        member_token = create_access_token(data={"sub": "deploy_bot", "role": "MEMBER", "user_id": 1})
        res = client.get("/v1/member/fees/outstanding", headers={"Authorization": f"Bearer {member_token}"})
        if res.status_code != 200:
            fail(f"Outstanding fees failed: {res.status_code} {res.text}")
        data = res.json()["data"]
        success(f"{data['count']} outstanding fees, {data['display_total']} {data['currency']}")

    success("Deployment Validation Passed!")

if __name__ == "__main__":
    main()
