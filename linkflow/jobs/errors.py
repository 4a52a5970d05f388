"""Errors raised by the queue core. Each carries the HTTP status the API maps it to."""

from typing import List


class QueueError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequestError(QueueError):
    status_code = 400


class ConfigValidationError(InvalidRequestError):
    def __init__(self, problems: List[str]):
        super().__init__("Invalid queue configuration: " + "; ".join(problems))
        self.problems = problems


class QueueFullError(QueueError):
    status_code = 429


class JobNotFoundError(QueueError):
    status_code = 404

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class JobAccessDeniedError(QueueError):
    status_code = 403

    def __init__(self, job_id: str):
        super().__init__(f"Access denied for job {job_id}")
        self.job_id = job_id


class InvalidTransitionError(QueueError):
    status_code = 409


class JobNotCompletedError(QueueError):
    status_code = 409

    def __init__(self, job_id: str, status: str):
        super().__init__(f"Job {job_id} is not completed (status: {status})")
        self.job_id = job_id


class StorageError(QueueError):
    status_code = 500
