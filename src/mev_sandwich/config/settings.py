"""Application settings and configuration."""
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings

WEI_PER_ETH = 10**18
WEI_PER_GWEI = 10**9


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    
    # Server settings
    host: str = Field(default="0.0.0.0", description="Host to bind the server")
    port: int = Field(default=8000, description="Port to bind the server")
    debug: bool = Field(default=False, description="Enable debug mode")
    environment: str = Field(
        default="production",
        description="Deployment environment (development lowers trading floors)",
        alias="ENVIRONMENT"
    )
    
    # Blockchain settings
    http_endpoint: Optional[str] = Field(
        default=None,
        description="HTTP JSON-RPC endpoint used for requests",
        alias="HTTP_ENDPOINT"
    )
    
    ws_endpoint: Optional[str] = Field(
        default=None,
        description="WebSocket endpoint used for the pending transaction feed",
        alias="WS_ENDPOINT"
    )
    
    chain_id: int = Field(default=1, description="Chain ID of the target network", alias="CHAIN_ID")
    
    contract_address: Optional[str] = Field(
        default=None,
        description="Deployed sandwich contract address",
        alias="CONTRACT_ADDRESS"
    )
    
    private_key: Optional[str] = Field(
        default=None,
        description="Private key of the contract owner used for signing",
        alias="PRIVATE_KEY"
    )
    
    # Trading settings
    min_victim_size_eth: float = Field(
        default=5.0,
        description="Minimum victim trade size in ETH",
        alias="MIN_VICTIM_SIZE_ETH"
    )
    
    max_gas_price_gwei: float = Field(
        default=100.0,
        description="Maximum gas price we are willing to pay in gwei",
        alias="MAX_GAS_PRICE_GWEI"
    )
    
    min_profit_threshold_eth: float = Field(
        default=0.005,
        description="Minimum net profit in ETH after gas and loan fees",
        alias="MIN_PROFIT_THRESHOLD_ETH"
    )
    
    min_pair_liquidity_eth: float = Field(
        default=50.0,
        description="Pools shallower than this are rejected as illiquid",
        alias="MIN_PAIR_LIQUIDITY_ETH"
    )
    
    max_pair_liquidity_eth: float = Field(
        default=10000.0,
        description="Pools deeper than this are rejected as too deep",
        alias="MAX_PAIR_LIQUIDITY_ETH"
    )
    
    use_direct_eth: bool = Field(
        default=True,
        description="Fund WETH-input sandwiches with ETH instead of a flash loan",
        alias="USE_DIRECT_ETH"
    )
    
    min_confidence: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Minimum optimizer confidence for an opportunity",
        alias="MIN_CONFIDENCE"
    )
    
    front_run_solver: str = Field(
        default="exact",
        description="Front-run sizing solver: 'exact' or 'closed_form'",
        alias="FRONT_RUN_SOLVER"
    )
    
    estimated_gas_units: int = Field(
        default=600_000,
        description="Estimated gas used by a full sandwich execution",
        alias="ESTIMATED_GAS_UNITS"
    )
    
    flash_loan_fee_bips: int = Field(
        default=9,
        description="Flash loan fee in basis points",
        alias="FLASH_LOAN_FEE_BIPS"
    )
    
    flash_loan_buffer_percent: int = Field(
        default=120,
        description="Flash loan principal as a percentage of the front-run amount",
        alias="FLASH_LOAN_BUFFER_PERCENT"
    )
    
    simulate_before_dispatch: bool = Field(
        default=False,
        description="Call simulateSandwich on the contract before submitting",
        alias="SIMULATE_BEFORE_DISPATCH"
    )
    
    # Coordination settings
    opportunity_timeout_seconds: float = Field(
        default=10.0,
        description="Seconds an admitted opportunity stays eligible for dispatch",
        alias="OPPORTUNITY_TIMEOUT_SECONDS"
    )
    
    processing_interval_ms: int = Field(
        default=100,
        description="Interval of the opportunity processing cycle",
        alias="PROCESSING_INTERVAL_MS"
    )
    
    max_in_flight_opportunities: int = Field(
        default=256,
        description="Capacity of the in-flight opportunity map",
        alias="MAX_IN_FLIGHT_OPPORTUNITIES"
    )
    
    nonce_refresh_seconds: float = Field(
        default=30.0,
        description="Maximum age of the local nonce before it is refreshed from chain",
        alias="NONCE_REFRESH_SECONDS"
    )
    
    tx_receipt_timeout_seconds: float = Field(
        default=120.0,
        description="Seconds to wait for a sandwich receipt before timing out",
        alias="TX_RECEIPT_TIMEOUT_SECONDS"
    )
    
    tx_deadline_seconds: int = Field(
        default=60,
        description="Deadline offset passed to the sandwich contract",
        alias="TX_DEADLINE_SECONDS"
    )
    
    degraded_after_failures: int = Field(
        default=5,
        description="Consecutive gas price failures before new opportunities are refused",
        alias="DEGRADED_AFTER_FAILURES"
    )
    
    stats_report_interval_seconds: float = Field(
        default=300.0,
        description="Interval of the statistics log report",
        alias="STATS_REPORT_INTERVAL_SECONDS"
    )
    
    # Logging settings
    log_level: str = Field(default="INFO", description="Root log level", alias="LOG_LEVEL")
    log_dir: Optional[str] = Field(
        default="logs",
        description="Directory for rotating log files (unset to log to stdout only)",
        alias="LOG_DIR"
    )
    
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",  # Ignore extra fields from .env
        "populate_by_name": True
    }
    
    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"
    
    @property
    def min_victim_size_wei(self) -> int:
        eth = 0.1 if self.is_development else self.min_victim_size_eth
        return int(eth * WEI_PER_ETH)
    
    @property
    def min_profit_threshold_wei(self) -> int:
        eth = 0.001 if self.is_development else self.min_profit_threshold_eth
        return int(eth * WEI_PER_ETH)
    
    @property
    def max_gas_price_wei(self) -> int:
        return int(self.max_gas_price_gwei * WEI_PER_GWEI)
    
    @property
    def min_pair_liquidity_wei(self) -> int:
        return int(self.min_pair_liquidity_eth * WEI_PER_ETH)
    
    @property
    def max_pair_liquidity_wei(self) -> int:
        return int(self.max_pair_liquidity_eth * WEI_PER_ETH)
    
    def missing_required(self) -> List[str]:
        """Names of the settings the execution path cannot run without."""
        required = {
            "CONTRACT_ADDRESS": self.contract_address,
            "PRIVATE_KEY": self.private_key,
            "HTTP_ENDPOINT": self.http_endpoint,
            "WS_ENDPOINT": self.ws_endpoint,
        }
        return [name for name, value in required.items() if not value]


# Global settings instance
settings = Settings()
