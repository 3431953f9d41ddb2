"""
Payment Records Module

Durable, append-only audit entries for every gateway transaction. Records
are owned independently of programs so the payment audit survives program
mutation and deletion. The external reference is the record id, which makes
the store itself the last line of defence against double application.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .errors import DuplicateReferenceError
from .money import ZERO
from .programs import HistoryStatus
from .schedule import as_utc, utcnow
from .storage import RecordExistsError, StorageInterface, StorageRecord


@dataclass
class PaymentRecord(StorageRecord):
    """Audit copy of one gateway transaction"""
    program_id: str
    user_id: str
    amount: Decimal
    reference: str
    status: HistoryStatus
    payment_date: datetime
    payment_method: str = "paystack"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentRecord':
        return cls(
            id=data['id'],
            created_at=as_utc(data['created_at']),
            updated_at=as_utc(data['updated_at']),
            program_id=data['program_id'],
            user_id=data['user_id'],
            amount=Decimal(data['amount']),
            reference=data['reference'],
            status=HistoryStatus(data['status']),
            payment_date=as_utc(data['payment_date']),
            payment_method=data.get('payment_method', 'paystack')
        )


def new_payment_record(program_id: str, user_id: str, amount: Decimal, reference: str,
                       payment_date: datetime, status: HistoryStatus = HistoryStatus.SUCCESS,
                       payment_method: str = "paystack") -> PaymentRecord:
    now = utcnow()
    return PaymentRecord(
        id=reference,
        created_at=now,
        updated_at=now,
        program_id=program_id,
        user_id=user_id,
        amount=amount,
        reference=reference,
        status=status,
        payment_date=payment_date,
        payment_method=payment_method
    )


class PaymentStore:
    """Append-only store of PaymentRecords keyed by external reference"""

    def __init__(self, storage: StorageInterface, table_name: str = "payments"):
        self.storage = storage
        self.table_name = table_name

    def record(self, payment: PaymentRecord) -> None:
        """
        Insert a payment record.

        Raises:
            DuplicateReferenceError: the reference was already recorded
        """
        try:
            self.storage.insert(self.table_name, payment.reference, payment.to_dict())
        except RecordExistsError:
            raise DuplicateReferenceError(payment.reference)

    def exists(self, reference: str) -> bool:
        return self.storage.exists(self.table_name, reference)

    def get(self, reference: str) -> Optional[PaymentRecord]:
        data = self.storage.load(self.table_name, reference)
        if data:
            return PaymentRecord.from_dict(data)
        return None

    def for_program(self, program_id: str) -> List[PaymentRecord]:
        """Payments for a program, by payment date"""
        records = [PaymentRecord.from_dict(data)
                   for data in self.storage.find(self.table_name, {"program_id": program_id})]
        records.sort(key=lambda r: r.payment_date)
        return records

    def recent(self, limit: int = 20) -> List[PaymentRecord]:
        """Most recently recorded payments first"""
        records = [PaymentRecord.from_dict(data) for data in self.storage.load_all(self.table_name)]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]

    def total_revenue(self) -> Decimal:
        """Sum of all successful payments"""
        return sum(
            (Decimal(data['amount'])
             for data in self.storage.find(self.table_name, {"status": HistoryStatus.SUCCESS.value})),
            ZERO
        )
