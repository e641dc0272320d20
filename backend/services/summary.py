from collections import defaultdict
from datetime import datetime

from models import Provenance
from services import ledger
from services.filters import categorize


def build_summary(records: list) -> dict:
    board = categorize(records)

    by_provenance: dict[str, int] = {p.value: 0 for p in Provenance}
    by_payment_status: dict[str, int] = defaultdict(int)
    billed = ledger.ZERO
    collected = ledger.ZERO
    outstanding = ledger.ZERO

    for record in records:
        by_provenance[record.provenance.value] += 1
        by_payment_status[record.payment_status] += 1
        billed += ledger.to_money(record.total_amount)
        collected += ledger.paid_amount(record)
        outstanding += ledger.due_amount(record)

    return {
        "generated_at": datetime.utcnow().isoformat(),
        "total": len(records),
        "buckets": board.counts,
        "by_provenance": by_provenance,
        "by_payment_status": dict(sorted(by_payment_status.items())),
        "totals": {
            "billed": float(billed),
            "collected": float(collected),
            "outstanding": float(outstanding),
        },
    }
