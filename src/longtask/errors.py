from __future__ import annotations


class LongTaskError(RuntimeError):
    pass


class AlreadyRunningError(LongTaskError):
    def __init__(self, singleton_description: str, session_ids: list[int]) -> None:
        self.singleton_description = singleton_description
        self.session_ids = list(session_ids)
        ids = ", ".join(str(session_id) for session_id in self.session_ids)
        super().__init__(f"Cannot launch: another {singleton_description} is already running (ID(s) {ids})")


class UnknownSessionError(LongTaskError):
    def __init__(self, session_id: int) -> None:
        self.session_id = session_id
        super().__init__(f"Invalid session ID {session_id}")


class InvalidSessionStateError(LongTaskError):
    pass


class NotRunningError(LongTaskError):
    def __init__(self, session_id: int) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id} is no longer running")


class LaunchError(LongTaskError):
    pass
