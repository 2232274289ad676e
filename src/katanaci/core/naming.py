"""Instance and container naming."""

import re
import uuid

INSTANCE_NAME_PATTERN = re.compile(r"^[a-f0-9]{12}$")


def new_instance_name() -> str:
    """Draw a 12 hex character name (48 bits, the last UUID4 group)."""
    return str(uuid.uuid4()).rsplit("-", 1)[-1]


def is_instance_name(value: str) -> bool:
    return INSTANCE_NAME_PATTERN.fullmatch(value) is not None


def new_api_key() -> str:
    return str(uuid.uuid4())


def container_name(prefix: str, instance_name: str) -> str:
    """Container name for an instance (e.g. katana-ci-4f2b3c60ae32)."""
    return f"{prefix}{instance_name}"
