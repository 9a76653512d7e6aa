"""Configuration management for the extraction engine.

Loads the YAML configuration into frozen pydantic models. Every parser
receives its own section at construction time, so tuning thresholds or
keyword lists never requires a code edit.
"""

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class SpatialConfig(_Frozen):
    """Thresholds for the nearest-candidate scorer."""

    max_vertical_search: float = 350
    max_horizontal_search: float = 250
    length_weight_factor: float = 50
    above_anchor_bonus: float = 20


class UtilityParserConfig(_Frozen):
    """Configuration for the utility meter parser."""

    min_serial_digits: int = 5
    min_fallback_reading_digits: int = 6
    unit_pair_distance: float = 100
    spec_noise_keywords: tuple[str, ...] = ("ISO", "CLASS", "PN", "Q3")
    # None keeps every manufacturer candidate regardless of distance.
    manufacturer_max_anchor_distance: float | None = None
    spatial: SpatialConfig = Field(default_factory=SpatialConfig)


class ReceiptParserConfig(_Frozen):
    """Configuration for the receipt/invoice parser."""

    price_column_min_x: float = 1450
    description_column_max_x: float = 1450
    item_window: float = 100
    label_window: float = 50
    proximity_range: float = 250
    header_scan_lines: int = 60
    date_scan_lines: int = 20
    address_max_lines: int = 6
    min_line_length: int = 1
    ignore_keywords: tuple[str, ...] = (
        "Shift", "Ente", "Delete", "Num", "Lock", "Home", "PgUp", "PgDn",
        "Customer", "Delivery", "Total", "Item Qty", "No.",
    )
    fee_keywords: tuple[str, ...] = ("Delivery", "Service", "Charge", "Fee")
    address_noise: tuple[str, ...] = (
        "Order Date", "Date", "No.", "Printed On", "PROMO", "Discount",
        "Payment", "Method",
    )


class GenericParserConfig(_Frozen):
    """Configuration for table reconstruction."""

    row_threshold: float = 50
    max_table_dimension: int = 1000


class DedupConfig(_Frozen):
    """Configuration for the dedup orchestrator."""

    cache_wait_timeout: float = 30.0
    cache_poll_interval: float = 0.2
    default_seller_id: str | None = None


class UploadConfig(_Frozen):
    """Limits applied to incoming uploads."""

    max_size_bytes: int = 50 * 1024 * 1024


class AppConfig(_Frozen):
    """Top-level application configuration."""

    utility: UtilityParserConfig = Field(default_factory=UtilityParserConfig)
    receipt: ReceiptParserConfig = Field(default_factory=ReceiptParserConfig)
    generic: GenericParserConfig = Field(default_factory=GenericParserConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    upload: UploadConfig = Field(default_factory=UploadConfig)
    templates_path: str = "configs/templates.yaml"
    log_level: str = "INFO"


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file.
            Defaults to configs/config.yaml.

    Returns:
        Validated, immutable application configuration.
    """
    if path is None:
        path = Path("configs/config.yaml")

    if path.exists():
        logger.info("Loading configuration from %s", path)
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        return AppConfig(**raw)

    logger.info("No config file found at %s, using defaults", path)
    return AppConfig()
