"""
Pytest configuration and fixtures
"""
import io
import os
import tempfile

import numpy as np
import pytest
from unittest.mock import Mock, AsyncMock
from aiogram.types import User, Chat, Message as TgMessage
from PIL import Image

# Set test environment variables
os.environ.setdefault("TESTING", "1")
os.environ.setdefault("SCANBOT_LOG_DIR", os.path.join(tempfile.gettempdir(), "receipt-scan-bot-logs"))

from scanflow.errors import ReceiptApiError  # noqa: E402
from scanflow.models import Receipt  # noqa: E402


@pytest.fixture
def mock_user():
    """Create a mock Telegram user"""
    user = Mock(spec=User)
    user.id = 123456789
    user.username = "test_user"
    user.first_name = "Test"
    user.last_name = "User"
    user.is_bot = False
    return user


@pytest.fixture
def mock_chat():
    """Create a mock Telegram chat"""
    chat = Mock(spec=Chat)
    chat.id = 123456789
    chat.type = "private"
    return chat


@pytest.fixture
def mock_message(mock_user, mock_chat):
    """Create a mock Telegram message"""
    message = Mock(spec=TgMessage)
    message.message_id = 1
    message.from_user = mock_user
    message.chat = mock_chat
    message.text = None
    message.photo = None
    message.document = None
    message.answer = AsyncMock()
    message.reply = AsyncMock()
    return message


@pytest.fixture
def fiscal_url():
    return "https://suf.purs.gov.rs/v/?vl=A0FQNjRXSlJOQVA2NFdKUk4"


@pytest.fixture
def sample_receipt_data(fiscal_url):
    """Receipt record as returned by the backend"""
    return {
        "id": "rcp_1",
        "userId": "usr_1",
        "qrCodeUrl": fiscal_url,
        "storeName": "Maxi",
        "totalAmount": 1110.0,
        "currency": "RSD",
        "receiptDate": "2026-01-10T20:56:18Z",
        "status": "scraped",
        "createdAt": "2026-01-10T20:57:00Z",
        "updatedAt": "2026-01-10T20:57:00Z",
    }


@pytest.fixture
def sample_receipt(sample_receipt_data):
    return Receipt.from_api(sample_receipt_data)


@pytest.fixture
def portal_unavailable():
    return ReceiptApiError("Fiscal portal temporarily unavailable", status=503)


@pytest.fixture
def gradient_png():
    """60x40 RGB gradient with no QR code in it"""
    xs = np.linspace(0, 255, 60, dtype=np.uint8)
    red = np.tile(xs, (40, 1))
    green = np.tile(np.linspace(255, 0, 40, dtype=np.uint8)[:, None], (1, 60))
    blue = np.full((40, 60), 128, dtype=np.uint8)
    image = Image.fromarray(np.dstack([red, green, blue]))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()
