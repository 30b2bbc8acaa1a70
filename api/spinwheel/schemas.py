from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime
from typing import List, Literal, Optional

from .utils import as_utc

# --- wheel / redemption ---

class SpinRequest(BaseModel):
    # presence is checked by the redemption engine so a missing field is a
    # 400 with a readable message rather than a 422
    code: Optional[str] = None
    username: Optional[str] = None

class SpinPrize(BaseModel):
    id: int
    text: str
    color: str

class SpinResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    winning_index: int = Field(alias="winningIndex")
    prize: SpinPrize
    message: str

class HistoryItem(BaseModel):
    code: str
    prize: str
    timestamp: datetime
    model_config = ConfigDict(from_attributes=True)

    @field_validator("timestamp")
    @classmethod
    def timestamp_in_utc(cls, v: datetime) -> datetime:
        # sqlite returns naive values; they are UTC
        return as_utc(v)

class HistoryResponse(BaseModel):
    ok: bool = True
    history: List[HistoryItem]
    count: int

# --- prizes ---

class PrizeOut(BaseModel):
    id: Optional[int] = None
    name: str
    color: str
    probability: float
    is_active: bool = True
    order: int = 0
    model_config = ConfigDict(from_attributes=True)

class PrizeListResponse(BaseModel):
    ok: bool = True
    prizes: List[PrizeOut]

class PrizeIn(BaseModel):
    name: str = Field(min_length=1, max_length=80)
    color: Optional[str] = None
    probability: Optional[float] = Field(default=None, ge=0, le=100)
    is_active: bool = True
    order: Optional[int] = None

class PrizeUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=80)
    color: Optional[str] = None
    probability: Optional[float] = Field(default=None, ge=0, le=100)
    is_active: Optional[bool] = None
    order: Optional[int] = None

class PrizeResponse(BaseModel):
    ok: bool = True
    prize: PrizeOut

class ProbabilityItem(BaseModel):
    id: int
    probability: float = Field(ge=0, le=100)

class ProbabilitiesBatchRequest(BaseModel):
    probabilities: List[ProbabilityItem]

# --- codes & logs ---

class CodeGenerateRequest(BaseModel):
    count: int = 1
    length: int = 8
    prefix: str = ""
    expires_at: Optional[datetime] = None
    note: Optional[str] = None

class CodeGenerateResponse(BaseModel):
    ok: bool = True
    count: int
    codes: List[str]

class SpinCodeOut(BaseModel):
    id: int
    code: str
    status: Literal["active", "used", "disabled", "expired"]
    note: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    used_at: Optional[datetime] = None
    used_by_username: Optional[str] = None
    prize: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)

class SpinCodeResponse(BaseModel):
    ok: bool = True
    code: SpinCodeOut

class SpinCodeList(BaseModel):
    ok: bool = True
    items: List[SpinCodeOut]
    total: int

class SpinLogOut(BaseModel):
    id: int
    code: str
    prize: str
    used_by: Optional[int] = None
    used_by_username: str
    timestamp: datetime
    model_config = ConfigDict(from_attributes=True)

    @field_validator("timestamp")
    @classmethod
    def timestamp_in_utc(cls, v: datetime) -> datetime:
        return as_utc(v)

class SpinLogList(BaseModel):
    ok: bool = True
    items: List[SpinLogOut]
    total: int

# --- live stats ---

class KpiSnapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_users: int = Field(alias="totalUsers")
    active_users: int = Field(alias="activeUsers")
    total_spins: int = Field(alias="totalSpins")
    available_codes: int = Field(alias="availableCodes")
    used_codes: int = Field(alias="usedCodes")

class RecentActivity(BaseModel):
    code: str
    used_by_username: Optional[str] = None
    prize: Optional[str] = None
    used_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)

class StatsResponse(BaseModel):
    ok: bool = True
    stats: KpiSnapshot
    total_codes: int
    recent_activity: List[RecentActivity]

# --- auth ---

class UserLoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=64)

class UserLoginResponse(BaseModel):
    message: str
    token: str
    username: str

class AdminLoginRequest(BaseModel):
    password: str

class AdminLoginResponse(BaseModel):
    token: str

class BlockResponse(BaseModel):
    ok: bool = True
    message: str
    is_blocked: bool

# --- users ---

class UserOut(BaseModel):
    id: int
    username: str
    role: Optional[str] = None
    is_blocked: bool = False
    created_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)

class UserResponse(BaseModel):
    ok: bool = True
    user: UserOut

class UserUpdate(BaseModel):
    username: str = Field(min_length=1, max_length=64)
