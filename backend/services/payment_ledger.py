"""
Payment Ledger - in-process record of settled and failed payment attempts
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger("PaymentLedger")


class PaymentEventType(str, Enum):
    SETTLED = "settled"
    FAILED = "failed"


@dataclass
class PaymentEvent:
    module_id: str
    payer_wallet: str
    pay_to: str
    value: str
    network: str
    event: PaymentEventType
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "moduleId": self.module_id,
            "payerWallet": self.payer_wallet,
            "payTo": self.pay_to,
            "value": self.value,
            "txHash": self.tx_hash,
            "network": self.network,
            "event": self.event.value,
            "error": self.error,
            "createdAt": self.created_at.isoformat(),
        }


class PaymentLedger:
    """Bounded append-only log of payment events; list() returns newest first"""

    def __init__(self, max_events: int = 10000):
        self._events: List[PaymentEvent] = []
        self.max_events = max_events

    def record(self, event: PaymentEvent) -> PaymentEvent:
        self._events.append(event)
        if len(self._events) > self.max_events:
            self._events = self._events[-self.max_events:]
        logger.info(f"Payment {event.event.value} for module {event.module_id} tx={event.tx_hash or '-'}")
        return event

    def list(self, module_id: Optional[str] = None) -> List[PaymentEvent]:
        events = reversed(self._events)
        if module_id is None:
            return list(events)
        return [e for e in events if e.module_id == module_id]

    def clear(self):
        self._events.clear()
