"""Environment-driven settings for the scan pipeline and the bot."""
import os

from dotenv import load_dotenv

load_dotenv()

SCANBOT_TOKEN = os.getenv("SCANBOT_TOKEN", "").strip()
RECEIPTS_API_BASE_URL = os.getenv("RECEIPTS_API_BASE_URL", "http://localhost:3000/api").rstrip("/")
RECEIPTS_API_TOKEN = os.getenv("RECEIPTS_API_TOKEN", "").strip() or None
RECEIPTS_API_TIMEOUT = int(os.getenv("RECEIPTS_API_TIMEOUT", "30"))
SCANBOT_LOG_LEVEL = os.getenv("SCANBOT_LOG_LEVEL", "INFO").upper()
SCANBOT_LOG_DIR = os.getenv("SCANBOT_LOG_DIR", "logs")
