"""
Scan handler - user-facing texts and keyboards for the scan flow.
Keeps message wording out of the bot's routing code.
"""
from typing import Optional
import logging

from aiogram.types import InlineKeyboardMarkup, InlineKeyboardButton

from scanflow.errors import (
    PfrEntryError,
    QrDecodeError,
    ReceiptApiError,
    RecoverableScanError,
    RetryExhaustedError,
    ScanErrorCode,
)
from scanflow.models import PfrData, Receipt, build_pfr_data
from scanflow.state import ScanFlowSnapshot, ScanFlowState


SCAN_RETRY_NOW = "scan_retry_now"
SCAN_CANCEL = "scan_cancel"


class ScanHandler:
    """Turns scan flow snapshots and errors into Telegram messages"""

    def build_instructions(self) -> str:
        return (
            "📸 Send a photo of the receipt's QR code (JPG/PNG/HEIC).\n\n"
            "💡 Tips:\n"
            "• Keep the QR code flat and fully in frame\n"
            "• Faded or creased prints are fine, the code is enhanced automatically\n"
            "• Send it as a file to avoid compression"
        )

    def build_retry_keyboard(self) -> InlineKeyboardMarkup:
        return InlineKeyboardMarkup(inline_keyboard=[
            [
                InlineKeyboardButton(text="🔄 Retry now", callback_data=SCAN_RETRY_NOW),
                InlineKeyboardButton(text="✖️ Cancel", callback_data=SCAN_CANCEL),
            ]
        ])

    def build_status_text(self, snapshot: ScanFlowSnapshot) -> Optional[str]:
        """Text for a state change, or None when the state needs no message"""
        if snapshot.state == ScanFlowState.RETRYING_PORTAL and snapshot.retry_meta:
            meta = snapshot.retry_meta
            seconds = meta.next_delay_ms // 1000
            return (
                "⚠️ The fiscal portal is not responding.\n"
                f"Attempt {meta.attempt}/{meta.max_attempts} in {seconds} s."
            )
        if snapshot.state == ScanFlowState.SUCCESS and snapshot.receipt is not None:
            return self.build_success_text(snapshot.receipt)
        return None

    def build_success_text(self, receipt: Receipt) -> str:
        lines = ["✅ <b>Receipt added!</b>"]
        if getattr(receipt, "store_name", None):
            lines.append(f"🏪 {receipt.store_name}")
        if getattr(receipt, "total_amount", None) is not None:
            currency = getattr(receipt, "currency", None) or "RSD"
            lines.append(f"💰 {receipt.total_amount:.2f} {currency}")
        if getattr(receipt, "status", None) == "pending":
            lines.append("🕒 Details will appear once the fiscal portal responds.")
        return "\n".join(lines)

    def describe_error(self, exc: BaseException) -> str:
        if isinstance(exc, QrDecodeError):
            if exc.code == ScanErrorCode.INVALID_IMAGE:
                return "❌ Could not open the image. Please send a JPG, PNG or HEIC photo."
            return "🔍 No QR code found. Try another photo with the code in focus."
        if isinstance(exc, RecoverableScanError):
            if exc.code == ScanErrorCode.NON_FISCAL_QR:
                return "⚠️ This QR code is not a fiscal receipt. Scan the code printed on the receipt."
            return "Scan cancelled. Send /scan to start again."
        if isinstance(exc, RetryExhaustedError):
            return "❌ The fiscal portal is unavailable right now. Please try again later."
        if isinstance(exc, ReceiptApiError):
            logging.info(f"Terminal receipt API error shown to user: status={exc.status}")
            return f"❌ Could not add the receipt: {exc.message[:200]}"
        return "❌ Something went wrong while processing the receipt."

    def build_pfr_usage(self) -> str:
        return (
            "Usage: /pfr <invoice number> <counter> <amount> <date and time>\n"
            "Example: /pfr AP64WJRN-AP64WJRN-132587 132557/132587 1.110,00 10.1.2026. 20:56:18"
        )

    def parse_pfr_command(self, text: str) -> PfrData:
        """Parses the /pfr command arguments into fiscal receipt identifiers"""
        parts = text.split()
        if parts and parts[0].startswith("/"):
            parts = parts[1:]
        if len(parts) < 4:
            raise PfrEntryError("Not enough receipt details.")
        invoice_number, counter, amount = parts[0], parts[1], parts[2]
        date_time = " ".join(parts[3:])
        invoice_parts = invoice_number.split("-")
        if len(invoice_parts) != 3:
            raise PfrEntryError("Invoice number (PFR) is required.")
        counter_parts = counter.split("/")
        if len(counter_parts) != 2:
            raise PfrEntryError("Invoice counter is required.")
        return build_pfr_data(
            pfr_part1=invoice_parts[0],
            pfr_part2=invoice_parts[1],
            pfr_part3=invoice_parts[2],
            counter_part1=counter_parts[0],
            counter_part2=counter_parts[1],
            sdc_date_time=date_time,
            total_amount=amount,
        )
