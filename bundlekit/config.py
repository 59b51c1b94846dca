from pathlib import Path
from typing import Any, Dict, Optional

from eth_utils import is_address, to_wei
from pydantic import AliasChoices, BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.recovery.errors import ConfigurationError


BASE_DIR = Path(__file__).resolve().parents[1]


class NetworkConfig(BaseModel):
    """Static description of a supported network."""

    chain_id: int
    name: str
    rpc_url: str
    explorer_url: str = ""
    gas_multiplier_percent: int = Field(default=100, ge=100, le=300)
    min_gas_price: int
    max_gas_price: int
    relay_network_tag: str = ""


NETWORKS: Dict[str, NetworkConfig] = {
    "bsc": NetworkConfig(
        chain_id=56,
        name="BSC Mainnet",
        rpc_url="https://bsc-dataseed.binance.org/",
        explorer_url="https://bscscan.com",
        gas_multiplier_percent=120,
        min_gas_price=to_wei(5, "gwei"),
        max_gas_price=to_wei(50, "gwei"),
        relay_network_tag="BSC-Mainnet",
    ),
    "bsc_testnet": NetworkConfig(
        chain_id=97,
        name="BSC Testnet",
        rpc_url="https://data-seed-prebsc-1-s1.binance.org:8545/",
        explorer_url="https://testnet.bscscan.com",
        gas_multiplier_percent=110,
        min_gas_price=to_wei(1, "gwei"),
        max_gas_price=to_wei(20, "gwei"),
        relay_network_tag="BSC-Testnet",
    ),
    "hardhat": NetworkConfig(
        chain_id=31337,
        name="Hardhat Local",
        rpc_url="http://localhost:8545",
        explorer_url="http://localhost:8545",
        gas_multiplier_percent=100,
        min_gas_price=to_wei(1, "gwei"),
        max_gas_price=to_wei(100, "gwei"),
        relay_network_tag="BSC-Testnet",
    ),
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Network
    network: str = Field(default="bsc", description="Active network key (bsc, bsc_testnet, hardhat)")
    rpc_url: str = Field(
        default="",
        description="Override the network's default RPC URL",
        validation_alias=AliasChoices("rpc_url", "bsc_rpc_url"),
    )
    gas_multiplier_percent: Optional[int] = Field(
        default=None,
        ge=100,
        le=300,
        description="Override the network's gas multiplier (120 == 1.20x)",
    )
    gas_estimation_buffer: int = Field(default=50000, ge=0, description="Gas added on top of estimates")
    gas_history_size: int = Field(default=100, ge=1, description="Gas quotes kept for diagnostics")
    target_block_offset: int = Field(default=5, ge=1, description="Blocks ahead of current height to target")

    # Sending identity (signing happens in the step builders)
    sender_address: str = Field(default="", description="Address whose pending nonce seeds each bundle")

    # Bundle relay
    bloxroute_api_endpoint: str = Field(default="https://api.blxrbdn.com", description="Relay endpoint")
    bloxroute_auth_header: str = Field(default="", description="Relay Authorization header value")
    bloxroute_timeout_ms: int = Field(default=30000, gt=0, description="Relay request timeout")
    bloxroute_max_retries: int = Field(default=3, gt=0, description="Relay call attempts")
    bloxroute_retry_delay_ms: int = Field(default=5000, gt=0, description="Relay backoff base delay")

    # Provider retry policy
    max_retries: int = Field(default=3, gt=0, description="Provider call attempts")
    retry_base_delay_ms: int = Field(default=1000, gt=0, description="Backoff base delay")
    retry_max_delay_ms: int = Field(default=30000, gt=0, description="Backoff ceiling")
    retry_exponential_base: float = Field(default=2.0, gt=0, description="Backoff growth factor")
    retry_jitter: float = Field(default=0.1, ge=0, lt=1, description="Jitter fraction in [0, 1)")

    # Circuit breaker
    circuit_failure_threshold: int = Field(default=5, gt=0, description="Failures before opening")
    circuit_recovery_timeout_ms: int = Field(default=60000, gt=0, description="Cooldown before a trial call")
    circuit_monitoring_period_ms: int = Field(default=300000, gt=0, description="Recent failure window")

    # Bundle steps
    steps_factory: str = Field(
        default="",
        description="Import path ('module:callable') returning the bundle's BundleSteps",
    )

    # Monitoring
    log_level: str = Field(default="INFO", description="Logging level")
    enable_logging: bool = Field(default=True, description="Write daily JSON log files")
    log_dir: Path = Field(default=BASE_DIR / "logs", description="Directory for daily log files")
    enable_telegram: bool = Field(default=False, description="Send Telegram alerts")
    telegram_bot_token: str = Field(default="", description="Telegram bot token")
    telegram_chat_id: str = Field(default="", description="Telegram chat id")
    enable_discord: bool = Field(default=False, description="Send Discord alerts")
    discord_webhook_url: str = Field(default="", description="Discord webhook URL")

    @property
    def network_config(self) -> NetworkConfig:
        config = NETWORKS.get(self.network)
        if config is None:
            raise ConfigurationError(f"Unsupported network: {self.network}")
        updates: Dict[str, Any] = {}
        if self.rpc_url:
            updates["rpc_url"] = self.rpc_url
        if self.gas_multiplier_percent is not None:
            updates["gas_multiplier_percent"] = self.gas_multiplier_percent
        return config.model_copy(update=updates) if updates else config

    @property
    def is_mainnet(self) -> bool:
        return self.network == "bsc"

    @property
    def has_telegram(self) -> bool:
        return self.enable_telegram and bool(self.telegram_bot_token and self.telegram_chat_id)

    @property
    def has_discord(self) -> bool:
        return self.enable_discord and bool(self.discord_webhook_url)

    def validate_required(self) -> None:
        """Fail fast on anything that would make a bundle run impossible."""
        missing = [
            name.upper()
            for name in ("sender_address", "bloxroute_auth_header")
            if not getattr(self, name)
        ]
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}"
            )

        if self.network not in NETWORKS:
            raise ConfigurationError(f"Unsupported network: {self.network}")

        if not is_address(self.sender_address):
            raise ConfigurationError("Invalid sender address format")

        if self.retry_base_delay_ms > self.retry_max_delay_ms:
            raise ConfigurationError("retry_base_delay_ms cannot exceed retry_max_delay_ms")

    def update_gas_multiplier(self, percent: int) -> bool:
        """Runtime tweak; accepted only within 100-300 (1.0x to 3.0x)."""
        if 100 <= percent <= 300:
            self.gas_multiplier_percent = percent
            return True
        return False

    def export_config(self) -> Dict[str, Any]:
        """Configuration snapshot with credentials redacted."""
        redacted = "***REDACTED***"
        data = self.model_dump(mode="json")
        for secret in ("bloxroute_auth_header", "telegram_bot_token", "discord_webhook_url"):
            if data.get(secret):
                data[secret] = redacted
        try:
            data["network_config"] = self.network_config.model_dump(mode="json")
        except ConfigurationError:
            data["network_config"] = None
        return data


# Global settings instance
settings = Settings()
