"""Configuration management for goalstake.

Supports loading configuration from:
1. Default values (devnet)
2. Config file (~/.goalstake/config.json)
3. Environment variables

Configuration precedence: env vars > config file > defaults
"""

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from .core.accounts import Pubkey
from .errors import ConfigError
from .logging import get_logger
from .networking.rpc import COMMITMENT_LEVELS, DEVNET_URL
from .programs.escrow import ESCROW_PROGRAM_ID
from .programs.token import DEVNET_USDC_MINT, USDC_DECIMALS

logger = get_logger("config")

CONFIG_DIR = Path.home() / ".goalstake"
DEFAULT_CONFIG_PATH = CONFIG_DIR / "config.json"
DEFAULT_WALLET_PATH = CONFIG_DIR / "id.json"
PENDING_PATH = CONFIG_DIR / "pending.json"

MAX_CONFIG_SIZE = 64 * 1024

ENV_OVERRIDES = {
    "GOALSTAKE_RPC_URL": "rpc_url",
    "GOALSTAKE_COMMITMENT": "commitment",
    "GOALSTAKE_PROGRAM_ID": "program_id",
    "GOALSTAKE_TOKEN_MINT": "token_mint",
    "GOALSTAKE_WALLET": "wallet_path",
}


@dataclass
class Config:
    """Client configuration."""

    rpc_url: str = DEVNET_URL
    commitment: str = "confirmed"
    program_id: str = str(ESCROW_PROGRAM_ID)
    token_mint: str = str(DEVNET_USDC_MINT)
    token_decimals: int = USDC_DECIMALS
    request_timeout: float = 30.0
    confirm_attempts: int = 30
    confirm_interval: float = 1.0
    wallet_path: str = str(DEFAULT_WALLET_PATH)

    @property
    def program_pubkey(self) -> Pubkey:
        return Pubkey.from_string(self.program_id)

    @property
    def mint_pubkey(self) -> Pubkey:
        return Pubkey.from_string(self.token_mint)

    @property
    def wallet(self) -> Path:
        return Path(self.wallet_path).expanduser()

    def validate(self) -> None:
        """Validate configuration.

        Raises ConfigError if validation fails.
        """
        if not self.rpc_url.startswith(("http://", "https://")):
            raise ConfigError(f"rpc_url must be an http(s) URL, got {self.rpc_url!r}")

        if self.commitment not in COMMITMENT_LEVELS:
            raise ConfigError(
                f"commitment must be one of {', '.join(COMMITMENT_LEVELS)}, got {self.commitment!r}"
            )

        for name in ("program_id", "token_mint"):
            try:
                Pubkey.from_string(getattr(self, name))
            except ValueError as e:
                raise ConfigError(f"{name} is not a valid address: {e}") from e

        if not 0 <= self.token_decimals <= 18:
            raise ConfigError(f"token_decimals must be between 0 and 18, got {self.token_decimals}")

        if self.request_timeout <= 0:
            raise ConfigError(f"request_timeout must be > 0, got {self.request_timeout}")

        if self.confirm_attempts < 1:
            raise ConfigError(f"confirm_attempts must be >= 1, got {self.confirm_attempts}")

        if self.confirm_interval < 0:
            raise ConfigError(f"confirm_interval must be >= 0, got {self.confirm_interval}")

        if self.confirm_attempts * self.confirm_interval > 600:
            logger.warning(
                "Confirmation budget of %.0fs is unusually long",
                self.confirm_attempts * self.confirm_interval,
            )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file and environment.

    Args:
        config_path: Explicit path to config file (default ~/.goalstake/config.json)

    Returns:
        Validated Config object
    """
    config_path = config_path or DEFAULT_CONFIG_PATH
    config = Config()

    if config_path.exists():
        config = _load_config_file(config_path)
        logger.debug("Loaded config from %s", config_path)

    config = _apply_env_overrides(config)
    config.validate()
    return config


def _load_config_file(config_path: Path) -> Config:
    """Load configuration from a JSON file."""
    if config_path.stat().st_size > MAX_CONFIG_SIZE:
        raise ConfigError(f"Config file too large: {config_path.stat().st_size} > {MAX_CONFIG_SIZE}")

    try:
        with open(config_path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {config_path} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError("Config file must be a JSON object")

    allowed_keys = set(Config.__dataclass_fields__)
    unknown_keys = set(data) - allowed_keys
    if unknown_keys:
        logger.warning("Unknown config keys ignored: %s", sorted(unknown_keys))

    defaults = Config()
    try:
        return Config(
            rpc_url=str(data.get("rpc_url", defaults.rpc_url)),
            commitment=str(data.get("commitment", defaults.commitment)),
            program_id=str(data.get("program_id", defaults.program_id)),
            token_mint=str(data.get("token_mint", defaults.token_mint)),
            token_decimals=int(data.get("token_decimals", defaults.token_decimals)),
            request_timeout=float(data.get("request_timeout", defaults.request_timeout)),
            confirm_attempts=int(data.get("confirm_attempts", defaults.confirm_attempts)),
            confirm_interval=float(data.get("confirm_interval", defaults.confirm_interval)),
            wallet_path=str(data.get("wallet_path", defaults.wallet_path)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value in {config_path}: {e}") from e


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    for env_var, attr in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            setattr(config, attr, value)
            logger.debug("Using %s from env: %s", attr, value)
    return config


def save_config(config: Config, config_path: Path | None = None) -> Path:
    """
    Save configuration to a JSON file.

    Args:
        config: Configuration to save
        config_path: Path to write config file (default ~/.goalstake/config.json)
    """
    config_path = config_path or DEFAULT_CONFIG_PATH
    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "w", encoding="utf-8") as f:
        json.dump(config.to_dict(), f, indent=2)

    logger.info("Saved config to %s", config_path)
    return config_path
