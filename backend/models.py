# models.py
import math
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, StrictFloat, StrictInt, StrictStr, field_validator

from stats import is_valid_wallet

Number = Union[StrictInt, StrictFloat]


# Input models
class ReclaimIn(BaseModel):
    solReclaimed: Number
    accountsClosed: Number
    wallet: StrictStr
    signatures: List[str] = Field(default_factory=list)

    @field_validator("solReclaimed", "accountsClosed")
    @classmethod
    def _non_negative(cls, v):
        try:
            ok = math.isfinite(v) and v >= 0
        except OverflowError:
            ok = False
        if not ok:
            raise ValueError("must be a non-negative number")
        return v

    @field_validator("wallet")
    @classmethod
    def _wallet(cls, v):
        if not is_valid_wallet(v):
            raise ValueError("invalid wallet address")
        return v

    @field_validator("signatures", mode="before")
    @classmethod
    def _signatures(cls, v):
        # keep only non-empty strings; anything else means "no signatures"
        if not isinstance(v, list):
            return []
        return [s for s in v if isinstance(s, str) and s]


class HeartbeatIn(BaseModel):
    sessionId: StrictStr = Field(min_length=1, max_length=64)


class PageviewIn(BaseModel):
    page: Optional[Any] = None


class SocialClickIn(BaseModel):
    button: StrictStr


class FeatureRequestIn(BaseModel):
    title: StrictStr = Field(min_length=3, max_length=100)
    description: StrictStr = Field(min_length=10, max_length=500)
    contact: Optional[StrictStr] = Field(default=None, max_length=100)


# Output models
class OkOut(BaseModel):
    ok: bool = True


class GlobalStatsOut(BaseModel):
    totalSolReclaimed: Union[int, float]
    totalAccountsClosed: Union[int, float]
    totalWallets: int


class WalletStatsOut(BaseModel):
    totalSolReclaimed: Union[int, float]
    totalAccountsClosed: Union[int, float]
    uses: int


class ReclaimsOut(BaseModel):
    count: int
    sol: Union[int, float]
    accounts: Union[int, float]


class ViewsOut(BaseModel):
    total: int
    pages: Dict[str, int] = Field(default_factory=dict)
    countries: Dict[str, int] = Field(default_factory=dict)


class DashboardOut(BaseModel):
    activeVisitors: int
    globalStats: GlobalStatsOut
    todayViews: ViewsOut
    todayReclaims: ReclaimsOut
    weekReclaims: ReclaimsOut
    monthReclaims: ReclaimsOut
    socialClicks: Dict[str, int]
    recentReclaims: List[Dict[str, Any]]


class ReclaimPageOut(BaseModel):
    items: List[Dict[str, Any]]
    total: int
    page: int
    limit: int
    totalPages: int


class ChartPointOut(BaseModel):
    date: str
    reclaims: int
    sol: Union[int, float]
    accounts: Union[int, float]
    views: int


class TotpSetupOut(BaseModel):
    secret: str
    uri: str
    raw: str


class TotpStatusOut(BaseModel):
    enabled: bool


class MessageOut(BaseModel):
    ok: bool = True
    message: str
