import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Base paths
BASE_DIR = Path(__file__).parent.parent
PACKAGE_DIR = Path(__file__).parent

# Database
POSTGRES_HOST = os.getenv('POSTGRES_HOST', 'localhost')
POSTGRES_PORT = int(os.getenv('POSTGRES_PORT', 5432))
POSTGRES_USER = os.getenv('POSTGRES_USER', 'bossmatch')
POSTGRES_PASSWORD = os.getenv('POSTGRES_PASSWORD', 'changeme')
POSTGRES_DB = os.getenv('POSTGRES_DB', 'bossmatch_dev')

DATABASE_URL = os.getenv('DATABASE_URL') or (
    f"postgresql://{POSTGRES_USER}:{POSTGRES_PASSWORD}@{POSTGRES_HOST}:{POSTGRES_PORT}/{POSTGRES_DB}"
)
DB_ECHO = os.getenv('DB_ECHO', 'false').lower() == 'true'

# SecondMe chat capability
SECONDME_API_BASE_URL = os.getenv('SECONDME_API_BASE_URL', 'https://app.mindos.com/gate/lab')
SECONDME_CHAT_STREAM_ENDPOINT = '/api/secondme/chat/stream'
SECONDME_REFRESH_TOKEN_ENDPOINT = '/api/oauth/token/refresh'
SECONDME_CLIENT_ID = os.getenv('SECONDME_CLIENT_ID')
SECONDME_CLIENT_SECRET = os.getenv('SECONDME_CLIENT_SECRET')
SECONDME_TIMEOUT = int(os.getenv('SECONDME_TIMEOUT', 120))

# Refresh access tokens this many seconds before they expire
TOKEN_REFRESH_MARGIN = int(os.getenv('TOKEN_REFRESH_MARGIN', 300))

# AI matching
AI_MATCH_CONVERSATION_TURNS = int(os.getenv('AI_MATCH_CONVERSATION_TURNS', 5))
AI_MATCH_THRESHOLD = int(os.getenv('AI_MATCH_THRESHOLD', 60))
AI_MATCH_MAX_JOBS = int(os.getenv('AI_MATCH_MAX_JOBS', 10))

# Logging
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')


def api_url(endpoint: str) -> str:
    return f"{SECONDME_API_BASE_URL}{endpoint}"
