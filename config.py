import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

DB_URL = os.getenv("DB_URL", "sqlite:///concordium_tracker.db")

# Concordium dashboard API (reporting nodes)
NODES_SUMMARY_URL = os.getenv("NODES_SUMMARY_URL", "https://dashboard.mainnet.concordium.software/nodesSummary")

# JSON gateway in front of the node RPC (consensus info, blocks, bakers, peers)
CHAIN_API_BASE_URL = os.getenv("CHAIN_API_BASE_URL", "http://localhost:8080/v1")

# Bearer secret for the cron endpoints (empty = unprotected)
CRON_SECRET = os.getenv("CRON_SECRET", "")

# Block polling
INITIAL_BLOCKS_LOOKBACK = int(os.getenv("INITIAL_BLOCKS_LOOKBACK", "100"))  # Cold start: blocks before chain head
MAX_BLOCKS_PER_FETCH = int(os.getenv("MAX_BLOCKS_PER_FETCH", "100"))

# HTTP settings
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "20"))
REQUEST_RETRIES = int(os.getenv("REQUEST_RETRIES", "3"))
RETRY_DELAY_SECONDS = float(os.getenv("RETRY_DELAY_SECONDS", "2"))

# Wall-clock budgets per job
BLOCK_JOB_BUDGET_SECONDS = float(os.getenv("BLOCK_JOB_BUDGET_SECONDS", "60"))
NODE_JOB_BUDGET_SECONDS = float(os.getenv("NODE_JOB_BUDGET_SECONDS", "60"))
VALIDATOR_JOB_BUDGET_SECONDS = float(os.getenv("VALIDATOR_JOB_BUDGET_SECONDS", "120"))

# Validator registry fetch
VALIDATOR_FETCH_CONCURRENCY = int(os.getenv("VALIDATOR_FETCH_CONCURRENCY", "10"))
VALIDATOR_CACHE_TTL_SECONDS = int(os.getenv("VALIDATOR_CACHE_TTL_SECONDS", "300"))

# Bootstrapper detection
BOOTSTRAPPER_MIN_SEEN_BY = int(os.getenv("BOOTSTRAPPER_MIN_SEEN_BY", "10"))
BOOTSTRAPPER_MIN_AGE_DAYS = int(os.getenv("BOOTSTRAPPER_MIN_AGE_DAYS", "7"))

# API server
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8002"))

# Consensus alerts
ALERT_PHANTOM_BLOCK_PCT = float(os.getenv("ALERT_PHANTOM_BLOCK_PCT", "30"))  # Alert above this phantom block share
ALERT_STAKE_VISIBILITY_WARNING_PCT = float(os.getenv("ALERT_STAKE_VISIBILITY_WARNING_PCT", "70"))
ALERT_STAKE_VISIBILITY_CRITICAL_PCT = float(os.getenv("ALERT_STAKE_VISIBILITY_CRITICAL_PCT", "50"))
ALERT_COOLDOWN_MINUTES = int(os.getenv("ALERT_COOLDOWN_MINUTES", "60"))  # Per alert type
