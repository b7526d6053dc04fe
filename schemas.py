from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import CategoryKind, CategorySource, ImportStatus, RuleMatchType


class CanonicalTransaction(BaseModel):
    """A parsed transaction, independent of the export format it came from."""

    model_config = ConfigDict(frozen=True)

    date: date
    description: str = Field(..., max_length=500)
    amount_cents: int
    raw_type: Optional[str] = Field(default=None, max_length=80)
    external_ref: Optional[str] = Field(default=None, max_length=120)
    bank_category: Optional[str] = Field(default=None, max_length=200)

    @field_validator("description")
    @classmethod
    def _description_not_blank(cls, value: str) -> str:
        value = " ".join(value.split())
        if not value:
            raise ValueError("Description is empty")
        return value

    @field_validator("amount_cents")
    @classmethod
    def _amount_not_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("Amount is zero")
        return value


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    owner_id: int = 1
    source_key: Optional[str] = Field(default=None, max_length=40)


class CategoryIn(BaseModel):
    slug: str = Field(..., min_length=1, max_length=60, pattern=r"^[a-z0-9-]+$")
    name: str = Field(..., min_length=1, max_length=100)
    kind: CategoryKind


class RuleIn(BaseModel):
    pattern: str = Field(..., min_length=1, max_length=200)
    match_type: RuleMatchType = RuleMatchType.contains
    category_id: int
    priority: int = Field(default=100, ge=0, le=10_000)
    source_filter: Optional[str] = Field(default=None, max_length=40)
    is_active: bool = True


class CategorizeIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category_id: int
    create_rule: bool = True


class CategorizationRunIn(BaseModel):
    account_id: Optional[int] = None
    include_auto: bool = False


class ProcessIn(BaseModel):
    account_id: Optional[int] = None


class ReprocessIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: int
    min_date: date
    max_date: date
    affected_count: int = Field(..., ge=0)
    new_count: int = Field(..., ge=0)


class ImportBatchOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    source_key: str
    account_id: Optional[int]
    filename: str
    status: ImportStatus
    inserted_count: int
    skipped_count: int
    deleted_count: int
    error_message: Optional[str]
    processed_at: Optional[datetime]
    created_at: datetime


class RuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    pattern: str
    match_type: RuleMatchType
    category_id: int
    priority: int
    source_filter: Optional[str]
    is_active: bool


class AssignmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transaction_id: int
    category_id: int
    source: CategorySource
    confidence: float
    rule_id: Optional[int]
