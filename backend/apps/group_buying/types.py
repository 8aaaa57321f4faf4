"""
Typed inputs and outputs exchanged between the group buying engine and
its session store.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID


@dataclass
class SessionDraft:
    """Everything needed to open a new session."""
    product_id: UUID
    factory_id: UUID
    target_moq: int
    base_price: Decimal
    end_time: datetime
    price_tier_25: Decimal
    price_tier_50: Decimal
    price_tier_75: Decimal
    price_tier_100: Decimal
    factory_owner_id: Optional[UUID] = None
    session_code: Optional[str] = None
    start_time: Optional[datetime] = None
    estimated_completion_date: Optional[datetime] = None
    grosir_unit_size: int = 12


@dataclass
class SessionPatch:
    """
    Fields that may change while a session is forming.
    None leaves the stored value untouched.
    """
    end_time: Optional[datetime] = None
    base_price: Optional[Decimal] = None
    target_moq: Optional[int] = None
    estimated_completion_date: Optional[datetime] = None

    def as_update_fields(self) -> Dict[str, Any]:
        """Only the fields that were actually set."""
        values = {
            'end_time': self.end_time,
            'base_price': self.base_price,
            'target_moq': self.target_moq,
            'estimated_completion_date': self.estimated_completion_date,
        }
        return {name: value for name, value in values.items() if value is not None}

    def is_empty(self) -> bool:
        return not self.as_update_fields()


@dataclass
class ParticipantDraft:
    """A buyer's join request after validation."""
    session_id: UUID
    user_id: UUID
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    variant_id: Optional[UUID] = None


@dataclass
class WarehouseCheckInfo:
    """Outcome of a warehouse check, as persisted on the session."""
    checked_at: datetime
    has_stock: bool
    grosir_units_needed: int
    factory_notified: bool = False
    factory_notified_at: Optional[datetime] = None


@dataclass
class SessionFilters:
    """Listing filters; page/limit drive pagination."""
    status: Optional[str] = None
    factory_id: Optional[UUID] = None
    product_id: Optional[UUID] = None
    active_only: bool = False
    search: Optional[str] = None
    page: int = 1
    limit: int = 20


@dataclass
class ParticipantStats:
    """Aggregate over a session's participants."""
    participant_count: int = 0
    total_quantity: int = 0
    total_revenue: Decimal = Decimal('0')


@dataclass
class WarehouseCheckResult:
    """What the warehouse orchestrator reports back to the engine."""
    has_stock: bool
    grosir_units_needed: int
    results: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class VariantAvailability:
    """Join-time stock view of one variant."""
    variant_id: Optional[UUID]
    quantity: int
    reserved: int
    available: int
    locked: bool
    status: Optional[str] = None

    SERVICE_UNAVAILABLE = 'service_unavailable'

    @property
    def service_unavailable(self) -> bool:
        return self.status == self.SERVICE_UNAVAILABLE
