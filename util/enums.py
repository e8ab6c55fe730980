# util/enums.py
from enum import Enum
from typing import NamedTuple
from fastapi import status


class Color(str, Enum):
    RESET = "\033[0m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"
    BOLD = "\033[1m"

    def __str__(self):
        return self.value


class Environment(str, Enum):
    DEV = "dev"
    TEST = "test"
    PROD = "prod"


class ErrorInfo(NamedTuple):
    message: str
    http_status: int


class ErrorMessage(Enum):
    JOB_NOT_FOUND = ErrorInfo("Unknown job id", status.HTTP_404_NOT_FOUND)
    DOCUMENT_NOT_FOUND = ErrorInfo("Unknown document id", status.HTTP_404_NOT_FOUND)
    UNSUPPORTED_CONTENT = ErrorInfo(
        "Unsupported content kind", status.HTTP_415_UNSUPPORTED_MEDIA_TYPE
    )
    QUEUE_UNAVAILABLE = ErrorInfo(
        "Job queue is not accepting work", status.HTTP_503_SERVICE_UNAVAILABLE
    )
