"""Models for CryptoCompare provider (API params)."""
from pydantic import BaseModel


class CryptoCompareOrderBookParams(BaseModel):
    """Params for /data/v2/ob/l2/snapshot. Merge with 'fsyms' at call site."""

    tsyms: str = "USD"
    e: str = "coinbase"
    limit: int = 20
    apply_mapping: str = "true"


class CryptoComparePriceParams(BaseModel):
    """Params for /data/pricemultifull. Merge with 'fsyms' at call site."""

    tsyms: str = "USD"
