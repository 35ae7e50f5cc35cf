"""
Xeno CRM Configuration
Loads settings from environment variables with sensible defaults.
"""

import logging
import os
from pathlib import Path
from dotenv import load_dotenv

_logger = logging.getLogger(__name__)

# Load .env file
env_path = Path(__file__).parent.parent / '.env'
load_dotenv(env_path)


class Config:
    """Application configuration."""

    # Database: required, read from .env or the environment
    DATABASE_URL = os.getenv('DATABASE_URL')
    if not DATABASE_URL:
        _logger.critical("DATABASE_URL is not set, cannot start. Copy .env.example to .env and configure it.")
        raise ValueError("DATABASE_URL environment variable is not set. Copy .env.example to .env and configure it.")
    DB_CONNECT_TIMEOUT_SECONDS = int(os.getenv('DB_CONNECT_TIMEOUT_SECONDS', '10'))

    # Campaign defaults
    DEFAULT_MESSAGE_TEMPLATE = os.getenv('DEFAULT_MESSAGE_TEMPLATE', "Hi {name}, here's a special offer for you!")
    DEFAULT_CREATED_BY = os.getenv('DEFAULT_CREATED_BY', 'system')

    # Delivery dispatcher
    DISPATCH_DELAY_SECONDS = float(os.getenv('DISPATCH_DELAY_SECONDS', '0.1'))
    DISPATCH_MAX_CAMPAIGNS = int(os.getenv('DISPATCH_MAX_CAMPAIGNS', '32'))

    # Vendor: 'simulator' runs the in-process test double, 'http' calls VENDOR_BASE_URL
    VENDOR_MODE = os.getenv('VENDOR_MODE', 'simulator')
    VENDOR_BASE_URL = os.getenv('VENDOR_BASE_URL', 'http://localhost:3000/api/vendor')
    VENDOR_ACCEPT_TIMEOUT_SECONDS = float(os.getenv('VENDOR_ACCEPT_TIMEOUT_SECONDS', '5'))

    # Vendor simulator
    VENDOR_SUCCESS_RATE = float(os.getenv('VENDOR_SUCCESS_RATE', '0.9'))
    VENDOR_ACCEPT_DELAY_MIN = float(os.getenv('VENDOR_ACCEPT_DELAY_MIN', '0.5'))
    VENDOR_ACCEPT_DELAY_MAX = float(os.getenv('VENDOR_ACCEPT_DELAY_MAX', '1.5'))
    VENDOR_RECEIPT_DELAY_MIN = float(os.getenv('VENDOR_RECEIPT_DELAY_MIN', '1.0'))
    VENDOR_RECEIPT_DELAY_MAX = float(os.getenv('VENDOR_RECEIPT_DELAY_MAX', '3.0'))

    # AI Configuration
    # DeepSeek (rule translation, message suggestions, summaries)
    DEEPSEEK_API_KEY = os.getenv('DEEPSEEK_API_KEY', '')
    DEEPSEEK_BASE_URL = os.getenv('DEEPSEEK_BASE_URL', 'https://api.deepseek.com')
    DEFAULT_AI_MODEL = os.getenv('DEFAULT_AI_MODEL', 'deepseek-chat')
    # Claude (alternative backend)
    ANTHROPIC_API_KEY = os.getenv('ANTHROPIC_API_KEY', '')
    AI_TIMEOUT_SECONDS = float(os.getenv('AI_TIMEOUT_SECONDS', '10'))


# Singleton instance
config = Config()
