"""
Demonstration: Quote to Claim, with an Anchor Breach

This example walks one insured asset through the whole lifecycle
against the in-memory store and ledger.

Run with: python -m examples.demo_lifecycle
"""

from datetime import datetime, timedelta, timezone

from protect.config import ProtectConfig
from protect.core import InMemoryAdjudicationClient, InMemoryLedgerClient, ProtectService
from protect.db.store import InMemoryRecordStore


class DemoClock:
    def __init__(self):
        self.now = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def banner(title):
    print("=" * 60)
    print(title)
    print("=" * 60)


def main():
    banner("Protect - Lifecycle Demonstration")
    print()

    clock = DemoClock()
    ledger = InMemoryLedgerClient()
    service = ProtectService(
        InMemoryRecordStore(clock=clock),
        ledger,
        InMemoryAdjudicationClient(),
        ProtectConfig(),
        clock=clock,
    )

    # ================================================================
    # STEP 1: RATE A QUOTE
    # ================================================================
    banner("STEP 1: RATE A QUOTE")

    quote = service.rate_quote(
        {
            "asset_valuation_micros": 100_000_000,
            "security_level": "VERIFIED",
            "last_verified_service_days": 30,
            "transit_damage_history": False,
        },
        {"asset_id": "asset-7f3a", "coverage_type": "ALL_RISK", "term_days": 365},
    )

    print(f"[OK] Quote rated")
    print(f"   Quote ID: {quote.id}")
    print(f"   Premium: {quote.premium_micros} micros {quote.currency}")
    print(f"   Risk: {quote.risk_bps} bps ({', '.join(quote.reasons)})")
    print(f"   Expires: {quote.expires_at.isoformat()}")
    print()

    # ================================================================
    # STEP 2: BIND
    # ================================================================
    banner("STEP 2: BIND THE POLICY")

    policy = service.bind_policy({
        "quote_id": str(quote.id),
        "owner_id": "owner-42",
        "anchor_id": "anchor-1",
    })

    print(f"[OK] Policy bound")
    print(f"   Policy Number: {policy.policy_number}")
    print(f"   Term: {policy.effective_date:%Y-%m-%d} to {policy.expiration_date:%Y-%m-%d}")
    print(f"   Anchor: {policy.anchor_id} ({policy.anchor_status.value})")
    print()

    # ================================================================
    # STEP 3: ANCHOR REPORTS A TAMPER
    # ================================================================
    banner("STEP 3: ANCHOR TELEMETRY")

    clock.advance(hours=6)
    result = service.ingest_anchor_event({
        "anchor_id": "anchor-1",
        "event_type": "ANCHOR_SEAL_BROKEN",
        "payload": {"trigger_type": "TAMPER"},
        "event_timestamp": clock.now.isoformat(),
        "ledger_event_id": "demo-evt-1",
    })
    policy = service.get_policy(policy.id).policy

    print(f"[ALERT] Seal broken")
    print(f"   Risk Impact: {result.risk_impact.value}")
    print(f"   Policies Affected: {result.policies_affected}")
    print(f"   Anchor Status: {policy.anchor_status.value}")
    print()

    # ================================================================
    # STEP 4: FILE AND RESOLVE A CLAIM
    # ================================================================
    banner("STEP 4: CLAIM")

    submitted = service.submit_claim({
        "policy_id": str(policy.id),
        "claim_type": "THEFT",
        "description": "Container opened in transit, contents missing",
        "incident_date": clock.now.isoformat(),
        "claimed_amount_micros": 40_000_000,
        "anchor_event_ids": ["demo-evt-1"],
    })
    claim = submitted.claim

    print(f"[OK] Claim filed")
    print(f"   Claim Number: {claim.claim_number}")
    print(f"   Adjudication: {submitted.adjudication.adjudication_id} ({submitted.adjudication.status})")

    service.update_claim(claim.id, {"status": "UNDER_REVIEW"})
    claim = service.update_claim(claim.id, {
        "status": "APPROVED",
        "approved_amount_micros": 35_000_000,
        "resolved_by": "adjuster-7",
    })

    print(f"[OK] Claim resolved")
    print(f"   Status: {claim.status.value}")
    print(f"   Approved: {claim.approved_amount_micros} micros")
    print()

    # ================================================================
    # VERIFY THE LEDGER
    # ================================================================
    banner("LEDGER")

    for entry in ledger.list_events():
        print(f"  #{entry.sequence} | {entry.event['type'].value:<28} | {entry.event_hash[:16]}...")

    chain_valid = ledger.verify_chain()
    print()
    print(f"Chain Integrity: {'[VALID]' if chain_valid else '[COMPROMISED]'}")
    print(f"Total Events: {ledger.event_count}")
    print()

    banner("DEMONSTRATION COMPLETE")


if __name__ == "__main__":
    main()
