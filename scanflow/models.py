"""Request and response records of the receipts backend."""
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from scanflow.errors import PfrEntryError


PFR_COUNTER_EXTENSION = "ПП"


@dataclass
class PfrData:
    InvoiceNumberSe: str
    InvoiceCounter: str
    SdcDateTime: str
    TotalAmount: str
    InvoiceCounterExtension: str = PFR_COUNTER_EXTENSION


@dataclass
class CreateReceiptInput:
    qr_code_url: Optional[str] = None
    group_id: Optional[str] = None
    paid_by_id: Optional[str] = None
    pfr_data: Optional[PfrData] = None

    def to_json(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if self.qr_code_url:
            payload["qrCodeUrl"] = self.qr_code_url
        if self.group_id:
            payload["groupId"] = self.group_id
        if self.paid_by_id:
            payload["paidById"] = self.paid_by_id
        if self.pfr_data is not None:
            payload["pfrData"] = asdict(self.pfr_data)
        return payload


@dataclass
class Receipt:
    id: str
    status: str = "pending"
    qr_code_url: Optional[str] = None
    store_name: Optional[str] = None
    total_amount: Optional[float] = None
    currency: Optional[str] = None
    receipt_date: Optional[str] = None
    group_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Receipt":
        total = data.get("totalAmount")
        try:
            total_amount = float(total) if total is not None else None
        except (TypeError, ValueError):
            total_amount = None
        return cls(
            id=str(data.get("id", "")),
            status=data.get("status") or "pending",
            qr_code_url=data.get("qrCodeUrl"),
            store_name=data.get("storeName"),
            total_amount=total_amount,
            currency=data.get("currency"),
            receipt_date=data.get("receiptDate"),
            group_id=data.get("groupId"),
            raw=data,
        )


def _alnum_upper(value: str, limit: int) -> str:
    return re.sub(r"[^A-Za-z0-9]", "", value or "").upper()[:limit]


def _digits(value: str, limit: int) -> str:
    return re.sub(r"[^0-9]", "", value or "")[:limit]


def build_pfr_data(
    pfr_part1: str,
    pfr_part2: str,
    pfr_part3: str,
    counter_part1: str,
    counter_part2: str,
    sdc_date_time: str,
    total_amount: str,
) -> PfrData:
    """
    Build fiscal identifiers typed in by hand from a printed receipt.

    Used when the QR code itself is unreadable. Example values:
    ``AP64WJRN-AP64WJRN-132587``, counter ``132557/132587``.
    """
    part1 = _alnum_upper(pfr_part1, 8)
    part2 = _alnum_upper(pfr_part2, 8)
    part3 = _digits(pfr_part3, 6)
    if not part1 or not part2 or not part3:
        raise PfrEntryError("Invoice number (PFR) is required.")
    counter1 = _digits(counter_part1, 10)
    counter2 = _digits(counter_part2, 10)
    if not counter1 or not counter2:
        raise PfrEntryError("Invoice counter is required.")
    if not (sdc_date_time or "").strip():
        raise PfrEntryError("Receipt date is required.")
    if not (total_amount or "").strip():
        raise PfrEntryError("Total amount is required.")
    return PfrData(
        InvoiceNumberSe=f"{part1}-{part2}-{part3}",
        InvoiceCounter=f"{counter1}/{counter2}",
        SdcDateTime=sdc_date_time.strip(),
        TotalAmount=total_amount.strip(),
    )
