import asyncio
import io
import logging
import mimetypes
from pathlib import Path
from typing import Any, Dict, Optional, Set

from aiogram import Bot, Dispatcher, F, Router
from aiogram.filters import Command, CommandStart
from aiogram.fsm.context import FSMContext
from aiogram.fsm.state import State, StatesGroup
from aiogram.types import BotCommand, CallbackQuery, Message

from handlers.scan_handler import SCAN_CANCEL, SCAN_RETRY_NOW, ScanHandler
from scanflow import config
from scanflow.api_client import ReceiptsApiClient
from scanflow.errors import PfrEntryError, QrDecodeError, ReceiptApiError, RecoverableScanError, RetryExhaustedError
from scanflow.fiscal_url import is_fiscal_url
from scanflow.session import ScanSession
from scanflow.state import ScanFlowSnapshot, ScanFlowState
from scanflow.telemetry import ScanTelemetry


log_level = getattr(logging, config.SCANBOT_LOG_LEVEL, logging.INFO)
logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(message)s")
log_dir = Path(config.SCANBOT_LOG_DIR)
log_dir.mkdir(parents=True, exist_ok=True)
file_handler = logging.FileHandler(log_dir / "scan.log")
file_handler.setLevel(log_level)
file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
logging.getLogger().addHandler(file_handler)
logging.info("ReceiptScanBot logging configured at %s", config.SCANBOT_LOG_LEVEL)


class ScanStates(StatesGroup):
    waiting_for_photo = State()


def truncate_message_for_telegram(text: str, max_length: int = 4000) -> str:
    """Telegram caps messages at 4096 characters; keep some headroom."""
    if len(text) <= max_length:
        return text
    truncated = text[:max_length - 50]
    last_newline = truncated.rfind('\n')
    if last_newline > max_length - 200:
        truncated = truncated[:last_newline]
    return truncated + "\n\n... (message truncated)"


def detect_mime_type(message: Message, file_path: str) -> str:
    if message.document and message.document.mime_type:
        return message.document.mime_type
    guessed, _ = mimetypes.guess_type(file_path)
    return guessed or "image/jpeg"


class ReceiptScanBot:
    """Telegram bot driving scan sessions against the receipts backend."""

    def __init__(self, token: str, api_client: Optional[ReceiptsApiClient] = None) -> None:
        self.bot = Bot(token=token)
        self.dp = Dispatcher()
        self.router = Router(name="receipt_scan")
        self.api = api_client or ReceiptsApiClient()
        self.telemetry = ScanTelemetry()
        self.scan_handler = ScanHandler()
        self._sessions: Dict[int, ScanSession] = {}
        self._notify_tasks: Set[asyncio.Task] = set()
        self.dp.include_router(self.router)
        self._register_handlers()

    @classmethod
    def from_env(cls) -> "ReceiptScanBot":
        if not config.SCANBOT_TOKEN:
            raise RuntimeError("SCANBOT_TOKEN is required to run ReceiptScanBot.")
        return cls(token=config.SCANBOT_TOKEN)

    async def run(self) -> None:
        logging.info("Starting ReceiptScanBot")
        commands = [
            BotCommand(command="scan", description="Scan a receipt QR code"),
            BotCommand(command="qr", description="Decode a QR code without saving"),
            BotCommand(command="pfr", description="Enter receipt identifiers manually"),
            BotCommand(command="cancel", description="Cancel the current scan"),
        ]
        await self.bot.set_my_commands(commands)
        logging.info(f"Receipts API: {self.api.base_url}")
        await self.dp.start_polling(
            self.bot, allowed_updates=self.dp.resolve_used_update_types()
        )

    def get_session(self, chat_id: int) -> ScanSession:
        session = self._sessions.get(chat_id)
        if session is None:
            session = ScanSession(self.api.create_receipt, telemetry=self.telemetry)
            session.flow.subscribe(lambda snapshot: self._on_flow_change(chat_id, snapshot))
            self._sessions[chat_id] = session
        return session

    def close_session(self, chat_id: int) -> None:
        session = self._sessions.pop(chat_id, None)
        if session is not None:
            session.close()

    def _register_handlers(self) -> None:
        @self.router.message(CommandStart())
        async def handle_start(message: Message, state: FSMContext) -> None:
            await state.clear()
            await message.answer(
                "👋 Hi! I add your fiscal receipts to the expense tracker.\n\n"
                "📋 Commands:\n"
                "/scan - scan a receipt QR code\n"
                "/qr - decode a QR code without saving it\n"
                "/pfr - enter receipt identifiers manually\n"
                "/cancel - cancel the current scan"
            )

        @self.router.message(Command("cancel"))
        async def handle_cancel(message: Message, state: FSMContext) -> None:
            await state.clear()
            self.close_session(message.chat.id)
            await message.answer("Ok, cancelled.")

        @self.router.message(Command("scan"))
        async def handle_scan_entry(message: Message, state: FSMContext) -> None:
            session = self.get_session(message.chat.id)
            if session.flow.is_busy:
                await message.answer("⏳ A receipt is still being submitted. Use /cancel to stop it.")
                return
            self._start_scanning(session)
            await state.set_state(ScanStates.waiting_for_photo)
            await message.answer(self.scan_handler.build_instructions())

        @self.router.message(Command("qr"))
        async def handle_qr_command(message: Message, state: FSMContext) -> None:
            await state.clear()
            if not message.photo and not message.document:
                await message.answer("Send a photo or a file with a QR code, captioned /qr.")
                return
            file_bytes, mime_type, file_name = await self._download_upload(message)
            if file_bytes is None:
                await message.answer("Could not read the file.")
                return
            session = self.get_session(message.chat.id)
            try:
                decoded = await session.decode(file_bytes, mime_type, file_name)
            except QrDecodeError as exc:
                await message.answer(self.scan_handler.describe_error(exc))
                return
            kind = "✅ fiscal receipt" if is_fiscal_url(decoded) else "⚠️ not a fiscal receipt"
            await message.answer(truncate_message_for_telegram(f"📱 QR code ({kind}):\n{decoded}"))

        @self.router.message(Command("pfr"))
        async def handle_pfr_command(message: Message, state: FSMContext) -> None:
            await state.clear()
            try:
                pfr_data = self.scan_handler.parse_pfr_command(message.text or "")
            except PfrEntryError as exc:
                await message.answer(f"❌ {exc}\n\n{self.scan_handler.build_pfr_usage()}")
                return
            session = self.get_session(message.chat.id)
            if session.flow.is_busy:
                await message.answer("⏳ A receipt is still being submitted. Use /cancel to stop it.")
                return
            self._start_scanning(session)
            try:
                await session.submit_pfr(pfr_data)
            except (RecoverableScanError, RetryExhaustedError, ReceiptApiError) as exc:
                await message.answer(self.scan_handler.describe_error(exc))
            except Exception as exc:
                logging.exception(f"Manual receipt entry failed: {exc}")
                await message.answer(self.scan_handler.describe_error(exc))

        @self.router.message(ScanStates.waiting_for_photo, F.photo | F.document)
        async def handle_scan_upload(message: Message, state: FSMContext) -> None:
            done = await self._process_scan_message(message)
            if done:
                await state.clear()

        @self.router.message(F.photo | F.document)
        async def handle_smart_upload(message: Message, state: FSMContext) -> None:
            await self._process_scan_message(message)

        @self.router.callback_query(F.data == SCAN_RETRY_NOW)
        async def handle_retry_now(callback: CallbackQuery) -> None:
            session = self._sessions.get(callback.message.chat.id) if callback.message else None
            if session is not None and session.retry_now():
                await callback.answer("Retrying…")
                return
            await callback.answer()

        @self.router.callback_query(F.data == SCAN_CANCEL)
        async def handle_retry_cancel(callback: CallbackQuery, state: FSMContext) -> None:
            await callback.answer()
            session = self._sessions.get(callback.message.chat.id) if callback.message else None
            if session is not None:
                session.cancel()
            await state.clear()

    def _start_scanning(self, session: ScanSession) -> None:
        """Telegram has no live camera: the session is ready as soon as it opens."""
        if session.state == ScanFlowState.SCANNING:
            return
        if session.state != ScanFlowState.IDLE and not session.flow.is_terminal:
            session.close()
        session.open()
        session.camera_ready()

    async def _process_scan_message(self, message: Message) -> bool:
        """Returns True when the session ended (success, failure or cancel)."""
        session = self.get_session(message.chat.id)
        if session.flow.is_busy:
            await message.answer("⏳ A receipt is still being submitted. Use /cancel to stop it.")
            return False
        if session.state != ScanFlowState.SCANNING:
            self._start_scanning(session)
        file_bytes, mime_type, file_name = await self._download_upload(message)
        if file_bytes is None:
            await message.answer("Could not read the file.")
            return False
        await message.answer("Receipt received, looking for the QR code…")
        try:
            await session.submit_image(file_bytes, mime_type, file_name)
            return True
        except (QrDecodeError, RecoverableScanError) as exc:
            await message.answer(self.scan_handler.describe_error(exc))
            return session.state != ScanFlowState.SCANNING
        except (RetryExhaustedError, ReceiptApiError) as exc:
            await message.answer(self.scan_handler.describe_error(exc))
            return True
        except Exception as exc:
            logging.exception(f"Receipt scan failed: {exc}")
            await message.answer(self.scan_handler.describe_error(exc))
            return True

    def _on_flow_change(self, chat_id: int, snapshot: ScanFlowSnapshot) -> None:
        text = self.scan_handler.build_status_text(snapshot)
        if not text:
            return
        keyboard = None
        if snapshot.state == ScanFlowState.RETRYING_PORTAL:
            keyboard = self.scan_handler.build_retry_keyboard()
        try:
            task = asyncio.get_running_loop().create_task(
                self._send_status(chat_id, text, keyboard)
            )
        except RuntimeError:
            logging.debug("No running loop, status message skipped")
            return
        self._notify_tasks.add(task)
        task.add_done_callback(self._notify_tasks.discard)

    async def _send_status(self, chat_id: int, text: str, keyboard: Any) -> None:
        try:
            await self.bot.send_message(chat_id, text, reply_markup=keyboard, parse_mode="HTML")
        except Exception as exc:
            logging.warning(f"Failed to send scan status to chat {chat_id}: {exc}")

    async def _download_upload(self, message: Message) -> tuple[Optional[bytes], Optional[str], Optional[str]]:
        file = await self._resolve_file(message)
        if file is None:
            return None, None, None
        file_bytes = await self._download_file(file.file_path)
        file_name = message.document.file_name if message.document else None
        return file_bytes, detect_mime_type(message, file.file_path or ""), file_name

    async def _resolve_file(self, message: Message) -> Optional[Any]:
        if message.photo:
            return await self.bot.get_file(message.photo[-1].file_id)
        if message.document:
            return await self.bot.get_file(message.document.file_id)
        return None

    async def _download_file(self, file_path: str) -> bytes:
        stream = await self.bot.download_file(file_path)
        buffer = io.BytesIO()
        buffer.write(stream.read())
        return buffer.getvalue()


async def main() -> None:
    bot = ReceiptScanBot.from_env()
    await bot.run()


def run_cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run_cli()
