"""Environment configuration for the Student Standing Tracker."""

import os
from typing import Dict

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

APP_TITLE = "Student Standing Tracker"
APP_VERSION = "1.0.0"

DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

# CORS configuration
ALLOW_ORIGINS = os.getenv('ALLOW_ORIGINS', '*').split(',')

MAX_UPLOAD_SIZE_MB = int(os.getenv('MAX_UPLOAD_SIZE_MB', '10'))
MAX_UPLOAD_SIZE = MAX_UPLOAD_SIZE_MB * 1024 * 1024

DEFAULT_PAGE_LIMIT = int(os.getenv('DEFAULT_PAGE_LIMIT', '50'))
MAX_PAGE_LIMIT = int(os.getenv('MAX_PAGE_LIMIT', '1000'))

EXPORT_PATH = os.getenv('EXPORT_PATH', os.path.join('exports', 'students.csv'))

# Requests per actor per minute, 0 disables limiting
RATE_LIMIT_PER_MINUTE = int(os.getenv('RATE_LIMIT_PER_MINUTE', '0'))

SUBSCRIBER_QUEUE_SIZE = int(os.getenv('SUBSCRIBER_QUEUE_SIZE', '256'))

# Client-side settings
API_BASE_URL = os.getenv('API_BASE_URL', 'http://localhost:8000')
INTERACTIVE_TIMEOUT_SECONDS = float(os.getenv('INTERACTIVE_TIMEOUT_SECONDS', '50'))
BULK_TIMEOUT_SECONDS = float(os.getenv('BULK_TIMEOUT_SECONDS', '120'))
CLIENT_MAX_RETRIES = int(os.getenv('CLIENT_MAX_RETRIES', '3'))
CLIENT_BASE_DELAY_SECONDS = float(os.getenv('CLIENT_BASE_DELAY_SECONDS', '1.0'))
CLIENT_CACHE_PATH = os.getenv('CLIENT_CACHE_PATH', os.path.join('.cache', 'students_cache.json'))


def parse_thresholds(thresholds_str: str) -> Dict[str, float]:
    """Parse 'name:value,name:value' into a dict of floats."""
    parsed = {}
    for item in thresholds_str.split(','):
        if not item.strip():
            continue
        key, value = item.split(':')
        parsed[key.strip()] = float(value.strip())
    return parsed


# Default risk thresholds, overridable per request
RISK_THRESHOLDS = parse_thresholds(
    os.getenv(
        'RISK_THRESHOLDS',
        'critical_gpa:2.0,warning_attendance:75,financial_limit:1000000'
    )
)
