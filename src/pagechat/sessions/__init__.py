from pagechat.sessions.store import SessionStore

__all__ = ["SessionStore"]
