"""Global transactions, their branches and the store that keeps them."""

from __future__ import annotations

import enum
import json
import logging
import math
import queue
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import requests

from .errors import RESULT_FAILURE, RESULT_ONGOING, FailureError, OngoingError
from .webutil import HTTP_CONFLICT, HTTP_OK, HTTP_TOO_EARLY, get_next_time

STATUS_PREPARED = "prepared"
STATUS_SUBMITTED = "submitted"
STATUS_ABORTING = "aborting"
STATUS_SUCCEED = "succeed"
STATUS_FAILED = "failed"

OP_TRY = "try"
OP_CONFIRM = "confirm"
OP_CANCEL = "cancel"
OP_ACTION = "action"
OP_COMPENSATE = "compensate"
OP_COMMIT = "commit"
OP_ROLLBACK = "rollback"

PROTOCOL_HTTP = "http"
PROTOCOL_GRPC = "grpc"
PROTOCOL_JSONRPC = "json-rpc"

DB_TYPE_MYSQL = "mysql"
DB_TYPE_POSTGRES = "postgres"

JRPC_CODE_FAILURE = -32901
JRPC_CODE_ONGOING = -32902

_TOUCH_RESET_AFTER = timedelta(milliseconds=1500)
_GID_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_GID_LENGTH = 22

logger = logging.getLogger(__name__)


class CronType(enum.Enum):
    """How the next retry interval is derived from the current one."""

    RESET = "reset"
    BACKOFF = "backoff"
    KEEP = "keep"


class StoreError(Exception):
    """The store rejected an update, usually because the status changed."""


class TransNotFoundError(LookupError):
    """No global transaction exists with the requested gid."""


class CallError(Exception):
    """A branch call returned a result that is neither success nor a known error."""


class UnknownResultError(Exception):
    """A branch returned a result that will be retried later."""


GrpcInvoker = Callable[["TransGlobal", str, str, str, bytes], None]


@dataclass
class ServerConfig:
    """Settings that govern how transactions are processed."""

    retry_interval: int = 10
    timeout_to_fail: int = 35
    request_timeout: int = 3
    update_branch_sync: bool = False
    store_driver: str = "boltdb"
    alert_retry_limit: int = 3
    alert_web_hook: str = ""
    now_forward: float = 0.0
    cron_forward: float = 0.0
    grpc_invoker: Optional[GrpcInvoker] = None


@dataclass
class TransBranch:
    """One branch call of a global transaction."""

    gid: str = ""
    branch_id: str = ""
    op: str = ""
    url: str = ""
    bin_data: bytes = b""
    status: str = STATUS_PREPARED
    error: Optional[Exception] = None
    create_time: Optional[datetime] = None
    update_time: Optional[datetime] = None
    finish_time: Optional[datetime] = None


@dataclass
class BranchStatusUpdate:
    """A branch status change waiting to be written in a batch."""

    gid: str
    branch_id: str
    op: str
    status: str
    finish_time: datetime


class Store:
    """In-memory transaction store; subclasses may persist elsewhere."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._globals: Dict[str, TransGlobal] = {}
        self._branches: Dict[str, List[TransBranch]] = {}
        self.pending_branch_updates: "queue.Queue[BranchStatusUpdate]" = queue.Queue()

    def save_new(self, trans: "TransGlobal", branches: List[TransBranch]) -> None:
        """Save a new transaction together with its branches."""
        with self._lock:
            if trans.gid in self._globals:
                raise StoreError(f"transaction {trans.gid} already exists")
            self._globals[trans.gid] = replace(trans)
            self._branches[trans.gid] = [replace(b) for b in branches]

    def find_trans_global(self, gid: str) -> Optional["TransGlobal"]:
        """Return a copy of the stored transaction, or None."""
        with self._lock:
            record = self._globals.get(gid)
            return replace(record) if record is not None else None

    def find_branches(self, gid: str) -> List[TransBranch]:
        """Return copies of the stored branches of a transaction."""
        with self._lock:
            return [replace(b) for b in self._branches.get(gid, [])]

    def _record_with_status(self, gid: str, status: str) -> "TransGlobal":
        record = self._globals.get(gid)
        if record is None or record.status != status:
            raise StoreError(f"transaction {gid} with status {status} not found")
        return record

    def change_global_status(
        self, trans: "TransGlobal", new_status: str, updates: List[str], finished: bool
    ) -> None:
        """Write the named fields of ``trans`` if its stored status is unchanged."""
        with self._lock:
            record = self._record_with_status(trans.gid, trans.status)
            for name in updates:
                if name == "status":
                    record.status = new_status
                else:
                    setattr(record, name, getattr(trans, name))
            if finished:
                record.next_cron_time = None

    def touch_cron_time(
        self, trans: "TransGlobal", next_cron_interval: int, next_cron_time: datetime
    ) -> None:
        """Record when the transaction should next be picked up."""
        with self._lock:
            record = self._globals.get(trans.gid)
            if record is None:
                raise StoreError(f"transaction {trans.gid} not found")
            record.next_cron_interval = next_cron_interval
            record.next_cron_time = next_cron_time
            record.update_time = datetime.now()

    def lock_global_save_branches(
        self, gid: str, status: str, branches: List[TransBranch], branch_pos: int
    ) -> None:
        """Save branches at ``branch_pos`` (or append when negative) if status matches."""
        with self._lock:
            self._record_with_status(gid, status)
            stored = self._branches.setdefault(gid, [])
            for offset, branch in enumerate(branches):
                copy_ = replace(branch)
                if branch_pos < 0:
                    stored.append(copy_)
                else:
                    pos = branch_pos + offset
                    if pos < len(stored):
                        stored[pos] = copy_
                    else:
                        stored.append(copy_)

    def queue_branch_status(self, update: BranchStatusUpdate) -> None:
        """Queue a branch status change to be written later."""
        self.pending_branch_updates.put(update)

    def flush_branch_updates(self) -> int:
        """Apply every queued branch status change; return how many were applied."""
        applied = 0
        while True:
            try:
                update = self.pending_branch_updates.get_nowait()
            except queue.Empty:
                return applied
            with self._lock:
                for branch in self._branches.get(update.gid, []):
                    if branch.branch_id == update.branch_id and branch.op == update.op:
                        branch.status = update.status
                        branch.finish_time = update.finish_time
                        branch.update_time = update.finish_time
                        applied += 1


@dataclass
class TransGlobal:
    """A global transaction and the logic to call and track its branches."""

    gid: str = ""
    trans_type: str = ""
    status: str = STATUS_PREPARED
    protocol: str = PROTOCOL_HTTP
    query_prepared: str = ""
    custom_data: str = ""
    steps: List[Dict[str, str]] = field(default_factory=list)
    bin_payloads: List[bytes] = field(default_factory=list)
    concurrent: bool = False
    timeout_to_fail: int = 0
    retry_interval: int = 0
    next_cron_interval: int = 0
    next_cron_time: Optional[datetime] = None
    request_timeout: int = 0
    retry_limit: int = 0
    retry_count: int = 0
    ext_headers: Dict[str, str] = field(default_factory=dict)
    branch_headers: Dict[str, str] = field(default_factory=dict)
    create_time: datetime = field(default_factory=datetime.now)
    update_time: Optional[datetime] = None
    finish_time: Optional[datetime] = None
    rollback_time: Optional[datetime] = None
    rollback_reason: str = ""
    result: str = ""
    store: Optional[Store] = field(default=None, repr=False, compare=False)
    config: ServerConfig = field(default_factory=ServerConfig, repr=False, compare=False)
    update_branch_sync: bool = False
    last_touched: Optional[datetime] = None

    @property
    def _store(self) -> Store:
        if self.store is None:
            raise StoreError(f"transaction {self.gid} is not bound to a store")
        return self.store

    def touch_cron_time(self, ctype: CronType, delay: int = 0) -> None:
        """Set the next cron time from ``delay`` if positive, else from ``ctype``."""
        self.last_touched = datetime.now()
        interval = self.next_cron_interval(ctype)
        next_time = get_next_time(delay if delay > 0 else interval)
        self._store.touch_cron_time(self, interval, next_time)
        self.next_cron_interval = interval
        self.next_cron_time = next_time
        logger.info("TouchCronTime for: %s", self.gid)

    def change_status(self, status: str, rollback_reason: str = "", result: str = "") -> None:
        """Move the transaction to ``status`` and persist the change."""
        updates = ["status", "update_time"]
        now = datetime.now()
        if status == STATUS_SUCCEED:
            self.finish_time = now
            updates.append("finish_time")
        elif status == STATUS_FAILED:
            self.rollback_time = now
            updates.append("rollback_time")
        if rollback_reason:
            self.rollback_reason = rollback_reason
            updates.append("rollback_reason")
        if result:
            self.result = result
            updates.append("result")
        self.update_time = now
        finished = status in (STATUS_SUCCEED, STATUS_FAILED)
        self._store.change_global_status(self, status, updates, finished)
        logger.info("ChangeGlobalStatus to %s ok for %s", status, self.gid)
        self.status = status

    def change_branch_status(self, branch: TransBranch, status: str, branch_pos: int) -> None:
        """Set a branch's status, writing it now or queueing it for a batch."""
        now = datetime.now()
        branch.status = status
        branch.finish_time = now
        branch.update_time = now
        conf = self.config
        if (
            conf.store_driver not in (DB_TYPE_MYSQL, DB_TYPE_POSTGRES)
            or conf.update_branch_sync
            or self.update_branch_sync
        ):
            self._store.lock_global_save_branches(self.gid, self.status, [branch], branch_pos)
            logger.info(
                "LockGlobalSaveBranches ok: gid: %s old status: %s branch: %s %s",
                branch.gid,
                STATUS_PREPARED,
                branch.branch_id,
                branch.op,
            )
        else:
            self._store.queue_branch_status(
                BranchStatusUpdate(
                    gid=self.gid,
                    branch_id=branch.branch_id,
                    op=branch.op,
                    status=status,
                    finish_time=now,
                )
            )

    def _elapsed(self, forward: float) -> timedelta:
        return datetime.now() - self.create_time + timedelta(seconds=forward)

    def is_timeout(self) -> bool:
        """Whether the transaction has run past its timeout."""
        timeout = self.timeout_to_fail
        if timeout == 0 and self.trans_type != "saga":
            timeout = self.config.timeout_to_fail
        if timeout == 0:
            return False
        return self._elapsed(self.config.now_forward) >= timedelta(seconds=timeout)

    def need_delay(self, delay: int) -> bool:
        """Whether less than ``delay`` seconds have passed since creation."""
        return self._elapsed(self.config.cron_forward) < timedelta(seconds=delay)

    def need_process(self) -> bool:
        """Whether the transaction is in a state that calls for processing."""
        return (
            self.status in (STATUS_SUBMITTED, STATUS_ABORTING)
            or (self.status == STATUS_PREPARED and self.is_timeout())
        )

    def _timeout_seconds(self) -> Optional[float]:
        return float(self.request_timeout or self.config.request_timeout) or None

    def _headers(self) -> Dict[str, str]:
        return {"Content-type": "application/json", **self.ext_headers, **self.branch_headers}

    def get_url_result(self, uri: str, branch_id: str, op: str, payload: Optional[bytes]) -> None:
        """Call a branch URL; return on success, raise on any other result."""
        if not uri:
            return
        payload = payload or b""
        if self.protocol == PROTOCOL_HTTP or uri.startswith(("http://", "https://")):
            if self.protocol == PROTOCOL_JSONRPC and "method" in uri:
                self._get_jsonrpc_result(uri, branch_id, op, payload)
            else:
                self._get_http_result(uri, branch_id, op, payload)
            return
        self._get_grpc_result(uri, branch_id, op, payload)

    def _get_http_result(self, uri: str, branch_id: str, op: str, payload: bytes) -> None:
        resp = requests.request(
            self.determine_http_method(payload),
            uri,
            params={
                "gid": self.gid,
                "trans_type": self.trans_type,
                "branch_id": branch_id,
                "op": op,
            },
            data=payload or None,
            headers=self._headers(),
            timeout=self._timeout_seconds(),
        )
        _raise_for_response(resp)

    def determine_http_method(self, payload: Optional[bytes]) -> str:
        """POST when there is a payload or the transaction is XA, else GET."""
        return "POST" if payload or self.trans_type == "xa" else "GET"

    def _get_jsonrpc_result(self, uri: str, branch_id: str, op: str, payload: bytes) -> None:
        params: Dict[str, Any] = json.loads(payload) if payload else {}
        params.update(gid=self.gid, trans_type=self.trans_type, branch_id=branch_id, op=op)
        method = parse_qs(urlparse(uri).query).get("method", [""])[0]
        resp = requests.post(
            uri,
            json={"params": params, "jsonrpc": "2.0", "method": method, "id": gen_gid()},
            headers=self._headers(),
            timeout=self._timeout_seconds(),
        )
        _raise_for_response(resp)
        _raise_for_jsonrpc(resp)

    def _get_grpc_result(self, uri: str, branch_id: str, op: str, payload: bytes) -> None:
        invoker = self.config.grpc_invoker
        if invoker is None:
            raise CallError(f"no grpc invoker configured to call {uri}")
        invoker(self, uri, branch_id, op, payload)

    def get_branch_result(self, branch: TransBranch) -> str:
        """Call a branch and return its new status, raising when it must be retried."""
        try:
            self.get_url_result(branch.url, branch.branch_id, branch.op, branch.bin_data)
        except FailureError as exc:
            if self.trans_type == "saga" and branch.op == OP_ACTION:
                branch.error = FailureError(f"url:{branch.url} return failed: {exc}")
                return STATUS_FAILED
            raise _unknown_result(exc) from exc
        except OngoingError:
            raise
        except Exception as exc:
            raise _unknown_result(exc) from exc
        return STATUS_SUCCEED

    def exec_branch(self, branch: TransBranch, branch_pos: int) -> str:
        """Call a branch, record its status, reschedule, and re-raise any error."""
        status = ""
        error: Optional[Exception] = None
        try:
            status = self.get_branch_result(branch)
        except Exception as exc:
            error = exc
        if status:
            self.change_branch_status(branch, status, branch_pos)
        conf = self.config
        if error is None:
            stale = self.last_touched is None or (
                datetime.now() - self.last_touched + timedelta(seconds=conf.now_forward)
                >= _TOUCH_RESET_AFTER
            )
            if stale or (
                self.next_cron_interval > conf.retry_interval
                and self.next_cron_interval > self.retry_interval
            ):
                self.touch_cron_time(CronType.RESET)
        elif isinstance(error, OngoingError):
            self.touch_cron_time(CronType.KEEP)
        else:
            self.touch_cron_time(CronType.BACKOFF)
            origin = self.next_cron_interval(CronType.RESET)
            ratio = self.next_cron_interval // origin if origin > 0 else 0
            retry_count = int(math.log2(ratio)) if ratio > 0 else 0
            logger.debug("origin: %d v: %d retryCount: %d", origin, ratio, retry_count)
            if retry_count >= conf.alert_retry_limit and conf.alert_web_hook:
                self._send_alert(branch, error, retry_count)
        if error is not None:
            raise error
        return status

    def _send_alert(self, branch: TransBranch, error: Exception, retry_count: int) -> None:
        try:
            requests.post(
                self.config.alert_web_hook,
                json={
                    "gid": self.gid,
                    "status": self.status,
                    "branch": branch.url,
                    "error": str(error),
                    "retry_count": retry_count,
                },
                timeout=self.config.request_timeout or None,
            )
        except requests.RequestException as exc:
            logger.error("alerting webhook error: %s", exc)

    def next_cron_interval(self, ctype: CronType) -> int:
        """Return the retry interval, in seconds, for ``ctype``."""
        if ctype is CronType.BACKOFF:
            return self.next_cron_interval * 2
        if ctype is CronType.KEEP:
            return self.next_cron_interval
        if self.retry_interval != 0:
            return self.retry_interval
        if 0 < self.timeout_to_fail < self.config.retry_interval:
            return self.timeout_to_fail
        return self.config.retry_interval


# The dataclass field and the method share a name; keep the method on the class.
TransGlobal.next_cron_interval_for = TransGlobal.next_cron_interval  # type: ignore[attr-defined]


def _unknown_result(exc: Exception) -> UnknownResultError:
    return UnknownResultError(
        "your http/grpc result should be specified as in the protocol documentation\n"
        f"unknown result will be retried: {exc}"
    )


def _raise_for_response(resp: requests.Response) -> None:
    text = resp.text
    if resp.status_code == HTTP_TOO_EARLY or RESULT_ONGOING in text:
        raise OngoingError(text)
    if resp.status_code == HTTP_CONFLICT or RESULT_FAILURE in text:
        raise FailureError(text)
    if resp.status_code != HTTP_OK:
        raise CallError(text)


def _raise_for_jsonrpc(resp: requests.Response) -> None:
    text = resp.text
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise CallError(text) from exc
    error = data.get("error") if isinstance(data, dict) else None
    if not error:
        return
    code = error.get("code") if isinstance(error, dict) else None
    if code == JRPC_CODE_FAILURE:
        raise FailureError(text)
    if code == JRPC_CODE_ONGOING:
        raise OngoingError(text)
    raise CallError(text)


def gen_gid() -> str:
    """Generate a short, unique, URL-safe transaction id."""
    number = uuid.uuid4().int
    chars = []
    while number:
        number, rem = divmod(number, len(_GID_ALPHABET))
        chars.append(_GID_ALPHABET[rem])
    return "".join(reversed(chars)).rjust(_GID_LENGTH, _GID_ALPHABET[0])


def load_trans_global(store: Store, gid: str, config: Optional[ServerConfig] = None) -> TransGlobal:
    """Load a transaction from the store and bind it to the store and config."""
    trans = store.find_trans_global(gid)
    if trans is None:
        raise TransNotFoundError(f"no TransGlobal with gid: {gid} found")
    return replace(trans, store=store, config=config or ServerConfig())