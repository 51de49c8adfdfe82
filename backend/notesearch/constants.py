from enum import StrEnum


class SearchSource(StrEnum):
    LEXICAL = "LEXICAL"
    SEMANTIC = "SEMANTIC"
    HYBRID = "HYBRID"


class EmbeddingOperation(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class RetryStatus(StrEnum):
    PENDING = "pending"
    RETRYING = "retrying"
    DEAD_LETTER = "dead_letter"


# Statuses a worker may still pick up
LIVE_RETRY_STATUSES: tuple[RetryStatus, ...] = (RetryStatus.PENDING, RetryStatus.RETRYING)

# target status -> statuses it may be entered from
RETRY_STATUS_TRANSITIONS: dict[RetryStatus, tuple[RetryStatus, ...]] = {
    RetryStatus.RETRYING: (RetryStatus.PENDING,),
    RetryStatus.PENDING: (RetryStatus.RETRYING, RetryStatus.DEAD_LETTER),
    RetryStatus.DEAD_LETTER: (RetryStatus.RETRYING,),
}

RETRY_ID_PREFIX = "RETRY-"
