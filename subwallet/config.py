"""SDK configuration loaded from the environment.

Values are read from process environment variables, with a ``.env`` file in
the working directory loaded first (existing variables win).

    SUBWALLET_HISTORY_LIMIT        transactions fetched per reconciliation (50)
    SUBWALLET_STORAGE_DIR          directory for the JSON store (memory if unset)
    SUBWALLET_RESOLVER_TIMEOUT     HTTP timeout for address resolution, seconds (30)
    SUBWALLET_ENFORCE_FUNDING_CAP  reject funding beyond unallocated balance (true)
    SUBWALLET_LOG_LEVEL            log level for configure_logging (INFO)
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


_TRUE_VALUES = {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Runtime settings for the SDK.

    Attributes:
        history_limit (int): Number of remote transactions fetched per pass.
            Transactions older than this window are not seen by reconciliation.
        storage_dir (Optional[str]): Directory for JsonFileStore; None keeps
            everything in memory
        resolver_timeout (float): Timeout for Lightning address HTTP calls
        enforce_funding_cap (bool): If True, funding a sub-wallet may not exceed
            the remote balance minus what other sub-wallets still hold
        log_level (str): Level passed to configure_logging
    """

    history_limit: int = Field(default=50, gt=0)
    storage_dir: Optional[str] = None
    resolver_timeout: float = Field(default=30.0, gt=0)
    enforce_funding_cap: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        """Build settings from the environment (and a .env file if present)."""
        load_dotenv(env_file)

        values = {}
        if os.getenv("SUBWALLET_HISTORY_LIMIT"):
            values["history_limit"] = int(os.environ["SUBWALLET_HISTORY_LIMIT"])
        if os.getenv("SUBWALLET_STORAGE_DIR"):
            values["storage_dir"] = os.environ["SUBWALLET_STORAGE_DIR"]
        if os.getenv("SUBWALLET_RESOLVER_TIMEOUT"):
            values["resolver_timeout"] = float(os.environ["SUBWALLET_RESOLVER_TIMEOUT"])
        if os.getenv("SUBWALLET_ENFORCE_FUNDING_CAP"):
            values["enforce_funding_cap"] = (
                os.environ["SUBWALLET_ENFORCE_FUNDING_CAP"].strip().lower() in _TRUE_VALUES
            )
        if os.getenv("SUBWALLET_LOG_LEVEL"):
            values["log_level"] = os.environ["SUBWALLET_LOG_LEVEL"]

        return cls(**values)
