"""Identifiers for jobs and workers, built from coolname slugs."""

import os
import secrets
import socket
import string

from coolname import generate_slug  # type: ignore[import-untyped]

SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def _random_suffix(length: int) -> str:
    return "".join(secrets.choice(SUFFIX_ALPHABET) for _ in range(length))


def generate_job_id(job_type: str) -> str:
    """
    @param job_type: The job's type; it prefixes the ID so IDs read well in logs
    @return: An ID such as "send_email/purple-elephant-a1b2c3"
    """
    return f"{job_type}/{generate_slug(2)}-{_random_suffix(6)}"


def generate_worker_id() -> str:
    """Identify a worker by host and process, plus a slug so threads in one process differ.

    @return: A worker ID such as "web-1-4242-quiet-otter"
    """
    return f"{socket.gethostname()}-{os.getpid()}-{generate_slug(2)}"
