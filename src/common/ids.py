import random
import string
import time

_BASE36 = string.digits + string.ascii_lowercase


def now_ms() -> int:
    return int(time.time() * 1000)


def _random_suffix(length: int) -> str:
    return "".join(random.choice(_BASE36) for _ in range(length))


def generate_page_load_id(timestamp_ms: int | None = None) -> str:
    ts = now_ms() if timestamp_ms is None else timestamp_ms
    return f"pageload_{ts}_{_random_suffix(7)}"


def generate_message_id(timestamp_ms: int | None = None) -> str:
    ts = now_ms() if timestamp_ms is None else timestamp_ms
    return f"msg_{ts}_{_random_suffix(8)}"
