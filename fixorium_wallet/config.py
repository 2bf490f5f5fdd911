"""
Configuration management for Fixorium Wallet

Loads settings from environment variables and .env file.
Includes logging configuration with file output and correlation ID support.
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, List

from dotenv import load_dotenv


def _load_env_file():
    """Load .env file from project root"""
    current = Path(__file__).parent.parent  # fixorium_wallet package parent
    env_file = current / ".env"

    if env_file.exists():
        load_dotenv(env_file)


# Load .env on module import
_load_env_file()


def _get_env(key: str, default: Optional[str] = "") -> Optional[str]:
    """Get environment variable with default"""
    value = os.getenv(key)
    if value is None:
        return default
    return value


def _get_env_float(key: str, default: float) -> float:
    """Get environment variable as float"""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        logging.getLogger(__name__).warning(
            f"Invalid float value for {key}='{value}', using default={default}"
        )
        return default


def _get_env_int(key: str, default: int) -> int:
    """Get environment variable as int"""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logging.getLogger(__name__).warning(
            f"Invalid int value for {key}='{value}', using default={default}"
        )
        return default


def _get_env_bool(key: str, default: bool) -> bool:
    """Get environment variable as bool"""
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _get_env_list(key: str, default: List[str]) -> List[str]:
    """Get comma-separated environment variable as list"""
    value = os.getenv(key)
    if value is None:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


# Mainnet endpoints used by the web client. Order is the selection tie-break.
DEFAULT_RPC_ENDPOINTS = [
    "https://api.mainnet-beta.solana.com",
    "https://rpc.ankr.com/solana",
    "https://solana-mainnet.g.alchemy.com/v2/alch-demo",
]


@dataclass
class RpcConfig:
    """RPC endpoint pool and client configuration"""
    endpoints: List[str] = field(default_factory=lambda: _get_env_list("RPC_ENDPOINTS", DEFAULT_RPC_ENDPOINTS))
    timeout_seconds: float = field(default_factory=lambda: _get_env_float("RPC_TIMEOUT_SECONDS", 15.0))
    # Extra attempts against the next-best endpoint after a transport failure
    failover_retries: int = field(default_factory=lambda: _get_env_int("RPC_FAILOVER_RETRIES", 1))
    # Endpoints with more consecutive failures than this are avoided while a healthier one exists
    failure_ceiling: int = field(default_factory=lambda: _get_env_int("RPC_FAILURE_CEILING", 2))
    # Number of selections a failed endpoint sits out
    backoff_selections: int = field(default_factory=lambda: _get_env_int("RPC_BACKOFF_SELECTIONS", 3))
    probe_timeout_ms: int = field(default_factory=lambda: _get_env_int("RPC_PROBE_TIMEOUT_MS", 3_000))
    # Background health probes so failed endpoints can win back their rank
    probe_interval_ms: int = field(default_factory=lambda: _get_env_int("RPC_PROBE_INTERVAL_MS", 60_000))
    commitment: str = field(default_factory=lambda: _get_env("RPC_COMMITMENT", "confirmed"))


@dataclass
class TxConfig:
    """Transaction configuration"""
    # Plain transfers need no compute budget instructions; 0 disables them
    compute_units: int = field(default_factory=lambda: _get_env_int("TX_COMPUTE_UNITS", 0))
    compute_unit_price: int = field(default_factory=lambda: _get_env_int("TX_COMPUTE_UNIT_PRICE", 0))
    confirmation_timeout: float = field(default_factory=lambda: _get_env_float("TX_CONFIRMATION_TIMEOUT", 60.0))
    confirmation_poll_interval: float = field(default_factory=lambda: _get_env_float("TX_CONFIRMATION_POLL_INTERVAL", 1.0))
    skip_preflight: bool = field(default_factory=lambda: _get_env_bool("TX_SKIP_PREFLIGHT", False))
    preflight_commitment: str = field(default_factory=lambda: _get_env("TX_PREFLIGHT_COMMITMENT", "confirmed"))


@dataclass
class BalanceConfig:
    """Balance polling configuration"""
    poll_interval_ms: int = field(default_factory=lambda: _get_env_int("BALANCE_POLL_INTERVAL_MS", 30_000))


@dataclass
class SettlementConfig:
    """Platform fee and settlement sequencing configuration"""
    # 0.0005 SOL platform fee
    fee_lamports: int = field(default_factory=lambda: _get_env_int("PLATFORM_FEE_LAMPORTS", 500_000))
    fee_address: str = field(default_factory=lambda: _get_env(
        "PLATFORM_FEE_ADDRESS", "FNVD1wied3e8WMuWs34KSamrCpughCMTjoXUE1ZXa6wM"
    ))
    # Network cost reserved on top of amount + fee when checking balance
    transfer_network_cost_lamports: int = field(default_factory=lambda: _get_env_int("TRANSFER_NETWORK_COST_LAMPORTS", 10_000))
    exchange_network_cost_lamports: int = field(default_factory=lambda: _get_env_int("EXCHANGE_NETWORK_COST_LAMPORTS", 1_000_000))
    # Confirmation polls on the fee leg before reporting an ambiguous timeout
    fee_confirm_attempts: int = field(default_factory=lambda: _get_env_int("SETTLEMENT_FEE_CONFIRM_ATTEMPTS", 2))


@dataclass
class IdentityConfig:
    """Identity-derived wallet configuration"""
    secret_salt: str = field(default_factory=lambda: _get_env("WALLET_SECRET_SALT", ""))


@dataclass
class JupiterConfig:
    """Jupiter quote API configuration"""
    quote_url: str = field(default_factory=lambda: _get_env("JUPITER_QUOTE_URL", "https://quote-api.jup.ag/v6/quote"))
    swap_url: str = field(default_factory=lambda: _get_env("JUPITER_SWAP_URL", "https://quote-api.jup.ag/v6/swap"))
    timeout: float = field(default_factory=lambda: _get_env_float("JUPITER_TIMEOUT", 30.0))
    max_retries: int = field(default_factory=lambda: _get_env_int("JUPITER_MAX_RETRIES", 3))
    default_slippage_bps: int = field(default_factory=lambda: _get_env_int("DEFAULT_SLIPPAGE_BPS", 100))
    max_accounts: int = field(default_factory=lambda: _get_env_int("JUPITER_MAX_ACCOUNTS", 64))


def _get_default_log_path() -> str:
    """Get default log file path under fixorium_wallet/log/ with UTC timestamp"""
    from datetime import datetime, timezone
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    log_dir = Path(__file__).parent / "log"
    return str(log_dir / f"fixorium_wallet_{timestamp}.log")


@dataclass
class LoggingConfig:
    """
    Logging configuration with file output and correlation ID support.

    Environment variables:
        LOG_FILE: Path to log file (empty disables file output)
        LOG_LEVEL: DEBUG, INFO, WARNING, ERROR, CRITICAL (default: INFO)
        LOG_FORMAT: Custom log format string
        LOG_CONSOLE: Enable console output (default: true)
        LOG_MAX_BYTES: Max log file size before rotation (default: 10MB)
        LOG_BACKUP_COUNT: Number of backup files to keep (default: 5)
    """
    log_file: str = field(default_factory=lambda: _get_env("LOG_FILE", _get_default_log_path()))
    log_level: str = field(default_factory=lambda: _get_env("LOG_LEVEL", "INFO"))
    log_format: str = field(default_factory=lambda: _get_env(
        "LOG_FORMAT",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    ))
    console_output: bool = field(default_factory=lambda: _get_env_bool("LOG_CONSOLE", True))
    max_bytes: int = field(default_factory=lambda: _get_env_int("LOG_MAX_BYTES", 10 * 1024 * 1024))  # 10MB
    backup_count: int = field(default_factory=lambda: _get_env_int("LOG_BACKUP_COUNT", 5))

    @property
    def level(self) -> int:
        """Get numeric log level"""
        return getattr(logging, self.log_level.upper(), logging.INFO)


@dataclass
class Config:
    """
    Main configuration container

    Usage:
        from fixorium_wallet.config import config

        print(config.rpc.endpoints)
        print(config.settlement.fee_lamports)
    """
    rpc: RpcConfig = field(default_factory=RpcConfig)
    tx: TxConfig = field(default_factory=TxConfig)
    balance: BalanceConfig = field(default_factory=BalanceConfig)
    settlement: SettlementConfig = field(default_factory=SettlementConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    jupiter: JupiterConfig = field(default_factory=JupiterConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def reload(cls) -> "Config":
        """Reload configuration from environment"""
        _load_env_file()
        return cls()


# Global config instance
config = Config()


def get_config() -> Config:
    """Get global configuration instance"""
    return config


def reload_config() -> Config:
    """
    Reload and return new configuration

    Mutates the global instance in place so modules that imported
    ``config`` see the new values.
    """
    fresh = Config.reload()
    for name in fresh.__dataclass_fields__:
        setattr(config, name, getattr(fresh, name))
    return config


def setup_logging(
    log_config: Optional[LoggingConfig] = None,
    logger_name: str = "fixorium_wallet",
) -> logging.Logger:
    """
    Set up logging based on configuration.

    Creates handlers for file and/or console output with rotation.
    The log file directory is created automatically if it doesn't exist.

    Args:
        log_config: Logging configuration (uses global config if None)
        logger_name: Name of the logger to configure

    Returns:
        Configured logger instance
    """
    if log_config is None:
        log_config = config.logging

    logger = logging.getLogger(logger_name)
    logger.setLevel(log_config.level)

    # Close before removing to flush buffers and release file handles
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    formatter = logging.Formatter(log_config.log_format)

    handlers: List[logging.Handler] = []

    if log_config.log_file:
        from logging.handlers import RotatingFileHandler

        log_path = Path(log_config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_config.log_file,
            maxBytes=log_config.max_bytes,
            backupCount=log_config.backup_count,
            encoding='utf-8',
        )
        file_handler.setLevel(log_config.level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if log_config.console_output:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_config.level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    for handler in handlers:
        logger.addHandler(handler)

    for name in [
        f"{logger_name}.infra",
        f"{logger_name}.modules",
        f"{logger_name}.protocols",
    ]:
        logging.getLogger(name).setLevel(log_config.level)

    if log_config.log_file:
        logger.info(f"Logging initialized: file={log_config.log_file}, level={log_config.log_level}")

    return logger


def enable_file_logging(
    log_file: Optional[str] = None,
    level: str = "INFO",
    console: bool = True,
) -> logging.Logger:
    """
    Quick setup for file logging.

    Args:
        log_file: Path to log file (defaults to fixorium_wallet/log/)
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        console: Also output to console

    Returns:
        Configured logger
    """
    if log_file is None:
        log_file = config.logging.log_file

    log_config = LoggingConfig(
        log_file=log_file,
        log_level=level,
        console_output=console,
    )
    return setup_logging(log_config)
