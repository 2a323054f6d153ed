"""
Upload Session Registry
In-process bookkeeping for session-based and block-list uploads
"""

import logging
import secrets
from typing import Optional, Dict, Any

from filegate.exceptions import StorageNotFoundError, StorageValidationError
from filegate.models import CompletedPart, MultipartUploadSession, UploadState

logger = logging.getLogger(__name__)


class UploadSessionRegistry:
    """
    Tracks live upload sessions for one adapter instance

    Ids are dropped on completion or abort so any later use of a dead id
    fails with StorageNotFoundError. With `ordered=True` parts must arrive
    strictly in sequence (offset-based sessions).
    """

    def __init__(self, provider_name: str, ordered: bool = True):
        self.provider_name = provider_name
        self.ordered = ordered
        self._sessions: Dict[str, MultipartUploadSession] = {}
        self._in_flight: Dict[str, set] = {}

    def open(
        self,
        key: str,
        upload_id: Optional[str] = None,
        backend_ref: Optional[str] = None,
        content_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> MultipartUploadSession:
        upload_id = upload_id or secrets.token_hex(16)
        session = MultipartUploadSession(
            upload_id=upload_id,
            key=key,
            backend_ref=backend_ref,
            content_type=content_type,
            metadata=metadata or {}
        )
        self._sessions[upload_id] = session
        self._in_flight[upload_id] = set()
        logger.info(f"{self.provider_name} upload session opened: {upload_id} -> {key}")
        return session

    def get(self, upload_id: str, key: Optional[str] = None) -> MultipartUploadSession:
        session = self._sessions.get(upload_id)
        if session is None or session.is_terminal:
            raise StorageNotFoundError(f"upload:{upload_id}", {"upload_id": upload_id})
        if key is not None and session.key != key:
            raise StorageNotFoundError(f"upload:{upload_id}", {"upload_id": upload_id, "key": key})
        return session

    def begin_part(self, upload_id: str, key: str, part_number: int) -> MultipartUploadSession:
        """Reserve a part slot, enforcing sequence for ordered sessions"""
        session = self.get(upload_id, key)
        if session.state == UploadState.COMPLETING:
            raise StorageValidationError(f"Upload {upload_id} is already completing")

        in_flight = self._in_flight[upload_id]
        if self.ordered:
            expected = session.next_part_number
            if part_number != expected or in_flight:
                raise StorageValidationError(
                    f"Out-of-order part {part_number} for upload {upload_id}, expected {expected}",
                    {"part_number": part_number, "expected_part_number": expected}
                )
        elif part_number in in_flight:
            raise StorageValidationError(f"Part {part_number} of upload {upload_id} is already in flight")

        in_flight.add(part_number)
        session.state = UploadState.PARTS_IN_FLIGHT
        return session

    def finish_part(self, upload_id: str, part: CompletedPart) -> MultipartUploadSession:
        session = self._sessions[upload_id]
        self._in_flight[upload_id].discard(part.part_number)
        # a re-uploaded block replaces its predecessor
        session.parts = [p for p in session.parts if p.part_number != part.part_number] + [part]
        session.parts.sort(key=lambda p: p.part_number)
        session.offset = sum(p.size or 0 for p in session.parts)
        return session

    def release_part(self, upload_id: str, part_number: int):
        """Give back a slot after a failed part so it can be retried"""
        if upload_id in self._in_flight:
            self._in_flight[upload_id].discard(part_number)

    def begin_completion(self, upload_id: str, key: str) -> MultipartUploadSession:
        session = self.get(upload_id, key)
        if self._in_flight[upload_id]:
            raise StorageValidationError(f"Upload {upload_id} still has parts in flight")
        session.state = UploadState.COMPLETING
        return session

    def cancel_completion(self, upload_id: str):
        session = self._sessions.get(upload_id)
        if session and session.state == UploadState.COMPLETING:
            session.state = UploadState.PARTS_IN_FLIGHT if session.parts else UploadState.CREATED

    def complete(self, upload_id: str) -> None:
        self._retire(upload_id, UploadState.COMPLETED)

    def abort(self, upload_id: str, key: str) -> MultipartUploadSession:
        session = self.get(upload_id, key)
        self._retire(upload_id, UploadState.ABORTED)
        return session

    def _retire(self, upload_id: str, state: UploadState):
        session = self._sessions.pop(upload_id, None)
        self._in_flight.pop(upload_id, None)
        if session:
            session.state = state
            logger.info(f"{self.provider_name} upload session {upload_id} {state.value}")

    def __len__(self) -> int:
        return len(self._sessions)
