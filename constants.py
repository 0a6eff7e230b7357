#!/usr/bin/env python3
from typing import Dict

# --- ANSI Color Codes ---
C_GREEN = '\033[92m'
C_RED = '\033[91m'
C_YELLOW = '\033[93m'
C_BLUE = '\033[94m'
C_RESET = '\033[0m'

# --- API Configuration ---
DEFILLAMA_YIELDS_API_BASE_URL = 'https://yields.llama.fi'
COINGECKO_API_BASE_URL = 'https://api.coingecko.com/api/v3'

# --- Environment Variable Names ---
TELEGRAM_BOT_TOKEN_ENV_VAR = 'TELEGRAM_BOT_TOKEN'
TELEGRAM_CHAT_ID_ENV_VAR = 'TELEGRAM_CHAT_ID'
COINGECKO_API_KEY_ENV_VAR = 'COINGECKO_API_KEY'
TRADING_PRIVATE_KEY_ENV_VAR = 'TRADING_PRIVATE_KEY'

# --- Twitter API Environment Variable Names ---
TWITTER_API_KEY_ENV_VAR = 'TWITTER_API_KEY'
TWITTER_API_SECRET_ENV_VAR = 'TWITTER_API_SECRET'
TWITTER_ACCESS_TOKEN_ENV_VAR = 'TWITTER_ACCESS_TOKEN'
TWITTER_ACCESS_TOKEN_SECRET_ENV_VAR = 'TWITTER_ACCESS_TOKEN_SECRET'

# --- Strategy Lifecycle ---
STRATEGY_ACTIVE = 'active'
STRATEGY_PAUSED = 'paused'
STRATEGY_COMPLETED = 'completed'
STRATEGY_STATUSES = (STRATEGY_ACTIVE, STRATEGY_PAUSED, STRATEGY_COMPLETED)

TRIGGER_TIME = 'time-based'
TRIGGER_PRICE = 'price-based'
TRIGGER_APY = 'apy-based'
TRIGGER_TYPES = (TRIGGER_TIME, TRIGGER_PRICE, TRIGGER_APY)

ACTION_DEPOSIT = 'deposit'
ACTION_WITHDRAW = 'withdraw'
ACTION_REBALANCE = 'rebalance'
ACTION_TYPES = (ACTION_DEPOSIT, ACTION_WITHDRAW, ACTION_REBALANCE)

EXECUTION_PENDING = 'pending'
EXECUTION_SUCCESS = 'success'
EXECUTION_FAILED = 'failed'

# Re-arm interval per strategy, in seconds.
EXECUTION_INTERVALS: Dict[str, int] = {
    'hourly': 3600,
    'daily': 86400,
    'weekly': 604800,
}
DEFAULT_EXECUTION_INTERVAL = 'hourly'

# --- Risk Levels (lower rank wins ties) ---
RISK_RANK: Dict[str, int] = {
    'low': 0,
    'medium': 1,
    'high': 2,
}

# --- Engine Defaults ---
DEFAULT_FRESHNESS_BOUND = 900.0
DEFAULT_LEASE_TTL = 300.0
DEFAULT_CONFIRMATION_TIMEOUT = 180.0
DEFAULT_PENDING_TIMEOUT = 900.0
DEFAULT_MAX_WORKERS = 3
CONFIRMATION_GRACE_SECONDS = 5.0

# --- Failure Reasons Recorded on Executions ---
REASON_GAS_CEILING = 'gas ceiling exceeded'
REASON_CONFIRMATION_TIMEOUT = 'confirmation timeout'
REASON_REVERTED = 'transaction reverted'
REASON_ASSET_MISMATCH = 'action asset does not match opportunity'
REASON_ORPHANED = 'interrupted before submission'

# --- DefiLlama chain names mapped to the network names we store ---
DEFILLAMA_CHAIN_NAMES: Dict[str, str] = {
    'Ethereum': 'ethereum',
    'Arbitrum': 'arbitrum',
    'Optimism': 'optimism',
    'Polygon': 'polygon',
    'Base': 'base',
    'BSC': 'bsc',
    'Avalanche': 'avalanche',
}
