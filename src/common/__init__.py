from common.ids import generate_message_id, generate_page_load_id, now_ms
from common.jsonio import atomic_write_json, read_json

__all__ = [
    "generate_message_id",
    "generate_page_load_id",
    "now_ms",
    "read_json",
    "atomic_write_json",
]
