"""Portfolio summary pushed on portfolio:<user> topics."""
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def from_score(cls, score: float) -> "RiskLevel":
        if score >= 75:
            return cls.CRITICAL
        if score >= 50:
            return cls.HIGH
        if score >= 25:
            return cls.MEDIUM
        return cls.LOW


class PortfolioAsset(BaseModel):
    symbol: str
    quantity: float
    average_price: float
    current_price: float
    value: float
    profit_loss: float
    profit_loss_pct: float | None = None
    allocation: float  # percent of total value


class PortfolioSummary(BaseModel):
    user_id: str
    total_value: float = 0.0
    total_cost: float = 0.0
    profit_loss: float = 0.0
    risk_score: float = 0.0
    risk_level: RiskLevel = RiskLevel.LOW
    assets: list[PortfolioAsset] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
