from sqlalchemy import BigInteger, Integer, JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB, "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntegerType = BigInteger().with_variant(Integer, "sqlite")


# ============================================================================
# ENUMS
# ============================================================================

class RuleScope(str, enum.Enum):
    """Whether a rule defined on a parent unit applies to its children"""
    ENTITY_ONLY = "ENTITY_ONLY"
    INCLUDE_CHILDREN = "INCLUDE_CHILDREN"


class AuthType(str, enum.Enum):
    """Outbound authentication schemes"""
    NONE = "NONE"
    API_KEY = "API_KEY"
    BASIC = "BASIC"
    BEARER = "BEARER"
    CUSTOM_HEADERS = "CUSTOM_HEADERS"
    OAUTH2 = "OAUTH2"
    CUSTOM = "CUSTOM"


class TransformMode(str, enum.Enum):
    """Payload transformation modes"""
    SIMPLE = "SIMPLE"
    SCRIPT = "SCRIPT"


class DeliveryMode(str, enum.Enum):
    """When a matched rule delivers"""
    IMMEDIATE = "IMMEDIATE"
    DELAYED = "DELAYED"
    RECURRING = "RECURRING"


class RetryStrategy(str, enum.Enum):
    """Backoff strategy between delivery attempts"""
    FIXED = "FIXED"
    LINEAR = "LINEAR"
    EXPONENTIAL = "EXPONENTIAL"


class ActionExecution(str, enum.Enum):
    """How multi-action rules run their actions"""
    SEQUENTIAL = "SEQUENTIAL"
    PARALLEL = "PARALLEL"


class DeliveryStatus(str, enum.Enum):
    """Delivery attempt log status"""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    RETRYING = "RETRYING"
    ABANDONED = "ABANDONED"
    SKIPPED = "SKIPPED"


class ScheduledStatus(str, enum.Enum):
    """Scheduled delivery status"""
    PENDING = "PENDING"
    SENT = "SENT"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class DLQStatus(str, enum.Enum):
    """Dead-letter entry status"""
    PENDING = "pending"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"


class CircuitState(str, enum.Enum):
    """Circuit breaker state"""
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class UnmappedBehavior(str, enum.Enum):
    """What a lookup does when a code has no mapping"""
    PASSTHROUGH = "PASSTHROUGH"
    DEFAULT = "DEFAULT"
    FAIL = "FAIL"
