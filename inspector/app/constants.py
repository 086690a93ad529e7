"""Inspector-level constants shared across modules."""
from __future__ import annotations

from enum import Enum


class EntityKind(str, Enum):
    QUEUE = "Queue"
    TOPIC_SUBSCRIPTION = "TopicSubscription"


class DispositionMode(str, Enum):
    REJECT = "reject"
    RESUBMIT = "resubmit"
    DELETE = "delete"


class Disposition(str, Enum):
    DEAD_LETTER = "DEAD_LETTER"
    COMPLETE = "COMPLETE"


class Strategy(str, Enum):
    LOCK_BATCH = "LOCK_BATCH"
    RAW_BROWSE = "RAW_BROWSE"


class LockBatchFailure(str, Enum):
    NO_MESSAGES = "NO_MESSAGES"
    NOT_IN_PAGE = "NOT_IN_PAGE"
    DISPOSITION_FAILED = "DISPOSITION_FAILED"


class SaslMechanism(str, Enum):
    PLAIN = "PLAIN"
    ANONYMOUS = "ANONYMOUS"


class AMQP:
    TLS_PORT = 5671
    DEAD_LETTER_SUFFIX = "/$DeadLetterQueue"
    SEQUENCE_NUMBER_ANNOTATION = "x-opt-sequence-number"


class CBS:
    ADDRESS = "$cbs"
    OPERATION_PUT_TOKEN = "put-token"
    STATUS_CODE = "status-code"
    STATUS_DESCRIPTION = "status-description"
    SUCCESS_CODES = (200, 202)
    RECEIVE_CREDIT = 5
    JWT = "jwt"
    SAS_TOKEN = "servicebus.windows.net:sastoken"


class PROPERTIES:
    ORIGINAL_SEQUENCE_NUMBER = "OriginalSequenceNumber"
    DEAD_LETTER_REASON = "DeadLetterReason"
    DEAD_LETTER_ERROR_DESCRIPTION = "DeadLetterErrorDescription"
    INJECTED = (DEAD_LETTER_REASON, DEAD_LETTER_ERROR_DESCRIPTION)


REJECT_REASON = "RejectedByOperator"
UNAUTHORIZED_MESSAGE = "Unauthorized: require Azure Service Bus Data Receiver (Listen) on entity."
