"""
Idempotency store for mutating admin requests.

Admission uses the (account_id, idempotency_key) primary key as the only
mutual-exclusion primitive: every request races an INSERT ... ON CONFLICT DO
NOTHING and the database picks exactly one winner. The winner gets the open
transaction and must commit its business write together with the captured
response; everyone else replays what the winner saved.
"""
import base64
import binascii
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Tuple, Union

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from starlette.responses import Response

from newsletter.core.idempotency import IdempotencyKey
from newsletter.models.idempotency import IdempotencyRecord
from newsletter.obs.errors import UnexpectedError
from newsletter.obs.logging import fingerprint_key, get_logger
from newsletter.obs.metrics import metrics
from newsletter.utils.clock import utcnow

logger = get_logger(__name__)

HeaderPair = Tuple[str, bytes]


class IdempotencyDecodeError(UnexpectedError):
    """A persisted response could not be decoded back into its parts."""
    pass


@dataclass(frozen=True)
class CapturedResponse:
    """
    Framework-independent snapshot of an HTTP response.

    Headers are kept as an ordered list of (name, raw value) pairs exactly as
    they were emitted, duplicates and casing included.
    """

    status_code: int
    headers: List[HeaderPair] = field(default_factory=list)
    body: bytes = b""

    @classmethod
    def from_response(cls, response: Response) -> "CapturedResponse":
        return cls(
            status_code=response.status_code,
            headers=[(name.decode("latin-1"), value) for name, value in response.raw_headers],
            body=bytes(response.body),
        )

    def to_response(self) -> Response:
        response = Response(content=self.body, status_code=self.status_code)
        response.raw_headers = [(name.encode("latin-1"), value) for name, value in self.headers]
        return response


class PendingTransaction:
    """
    Open transaction owned by the request that won admission for a key.

    Use as a context manager: leaving the block without a successful
    save_response rolls back, which also discards the pending idempotency row.
    """

    def __init__(self, session: Session, account_id: str, key: IdempotencyKey):
        self.session = session
        self.account_id = account_id
        self.key = key
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def commit(self):
        self.session.commit()
        self._finished = True
        self.session.close()

    def rollback(self):
        if self._finished:
            return
        try:
            self.session.rollback()
        finally:
            self._finished = True
            self.session.close()

    def __enter__(self) -> "PendingTransaction":
        return self

    def __exit__(self, exc_type, exc, tb):
        if not self._finished:
            if exc_type is not None:
                logger.warning(
                    "Rolling back idempotent request after failure",
                    extra={
                        'account_id': self.account_id,
                        'idempotency': 'aborted',
                        'error_type': exc_type.__name__,
                    },
                )
            self.rollback()
        return False


@dataclass(frozen=True)
class StartProcessing:
    """First writer: the caller owns ``transaction`` and performs the business write."""
    transaction: PendingTransaction


@dataclass(frozen=True)
class ReturnSavedResponse:
    """Replay: the request was already processed, return ``response`` as-is."""
    response: CapturedResponse


NextAction = Union[StartProcessing, ReturnSavedResponse]


def encode_headers(headers: List[HeaderPair]) -> List[dict]:
    """Serialize header pairs into a JSON-safe ordered list."""
    return [
        {"name": name, "value": base64.b64encode(value).decode("ascii")}
        for name, value in headers
    ]


def decode_headers(stored) -> List[HeaderPair]:
    """Inverse of encode_headers. Raises IdempotencyDecodeError on malformed input."""
    if not isinstance(stored, list):
        raise IdempotencyDecodeError("Saved response headers are not a list")

    headers = []
    for index, entry in enumerate(stored):
        try:
            name = entry["name"]
            value = base64.b64decode(entry["value"], validate=True)
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            raise IdempotencyDecodeError(f"Saved response header #{index} is malformed") from e
        if not isinstance(name, str):
            raise IdempotencyDecodeError(f"Saved response header #{index} has a non-string name")
        headers.append((name, value))
    return headers


def _insert_if_absent(session: Session, account_id: str, key: str, created_at: datetime):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        insert = postgresql.insert
    elif dialect == "sqlite":
        insert = sqlite.insert
    else:
        raise UnexpectedError(f"Unsupported database dialect for idempotency: {dialect}")

    statement = insert(IdempotencyRecord.__table__).values(
        account_id=account_id,
        idempotency_key=key,
        created_at=created_at,
    ).on_conflict_do_nothing(index_elements=["account_id", "idempotency_key"])
    return session.execute(statement)


class IdempotencyStore:
    """Admission control and response capture/replay backed by the ``idempotency`` table."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def try_processing(self, account_id: str, key: IdempotencyKey) -> NextAction:
        """
        Race for (account_id, key).

        Returns StartProcessing with an open transaction when this call inserted
        the row, ReturnSavedResponse when a completed row already existed.

        Raises:
            UnexpectedError: the row exists but holds no response, or storage failed
        """
        session = self.session_factory()
        try:
            result = _insert_if_absent(session, account_id, str(key), utcnow())
        except SQLAlchemyError as e:
            session.rollback()
            session.close()
            raise UnexpectedError("Failed to insert idempotency record") from e
        except BaseException:
            session.rollback()
            session.close()
            raise

        if result.rowcount > 0:
            metrics.record_idempotency_outcome("first_writer")
            logger.info(
                "Idempotency key admitted",
                extra={
                    'account_id': account_id,
                    'idempotency': 'first',
                    'idempotency_key_hash': fingerprint_key(str(key)),
                },
            )
            return StartProcessing(PendingTransaction(session, account_id, key))

        # Someone else owns or owned this key; release our write transaction first
        session.rollback()
        session.close()

        saved = self.get_saved_response(account_id, key)
        if saved is None:
            metrics.record_idempotency_outcome("rejected")
            raise UnexpectedError(
                "An idempotency record exists for this key but no response was saved"
            )

        metrics.record_idempotency_outcome("replayed")
        logger.info(
            "Replaying saved response",
            extra={
                'account_id': account_id,
                'idempotency': 'duplicate',
                'idempotency_key_hash': fingerprint_key(str(key)),
            },
        )
        return ReturnSavedResponse(saved)

    def save_response(
        self,
        transaction: PendingTransaction,
        response: Union[CapturedResponse, Response],
    ) -> CapturedResponse:
        """
        Persist the response on the pending row and commit the whole transaction.

        Returns the response rebuilt from what was stored, so the first caller
        and every replay see identical bytes.
        """
        if transaction.finished:
            raise UnexpectedError("The idempotency transaction has already been closed")

        if isinstance(response, Response):
            response = CapturedResponse.from_response(response)

        encoded_headers = encode_headers(response.headers)
        session = transaction.session
        try:
            record = session.get(IdempotencyRecord, (transaction.account_id, str(transaction.key)))
            if record is None:
                raise UnexpectedError("The pending idempotency record disappeared before commit")
            record.response_status_code = response.status_code
            record.response_headers = encoded_headers
            record.response_body = response.body
            transaction.commit()
        except SQLAlchemyError as e:
            transaction.rollback()
            raise UnexpectedError("Failed to save the idempotent response") from e
        except BaseException:
            transaction.rollback()
            raise

        return CapturedResponse(
            status_code=response.status_code,
            headers=decode_headers(encoded_headers),
            body=response.body,
        )

    def get_saved_response(self, account_id: str, key: IdempotencyKey) -> Optional[CapturedResponse]:
        """Read the completed response for (account_id, key), if any."""
        session = self.session_factory()
        try:
            record = session.execute(
                select(IdempotencyRecord).where(
                    IdempotencyRecord.account_id == account_id,
                    IdempotencyRecord.idempotency_key == str(key),
                )
            ).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise UnexpectedError("Failed to read saved response") from e
        finally:
            session.close()

        if record is None or not record.is_completed or record.response_body is None:
            return None

        return CapturedResponse(
            status_code=record.response_status_code,
            headers=decode_headers(record.response_headers),
            body=bytes(record.response_body),
        )


def sweep_expired_records(db: Session, ttl_seconds: int, now: Optional[datetime] = None) -> int:
    """
    Delete idempotency rows older than ``ttl_seconds``, pending or completed.

    Returns:
        Number of rows deleted
    """
    cutoff = (now or utcnow()) - timedelta(seconds=ttl_seconds)
    try:
        result = db.execute(
            delete(IdempotencyRecord.__table__).where(IdempotencyRecord.created_at < cutoff)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise UnexpectedError("Failed to delete expired idempotency records") from e

    return result.rowcount or 0
