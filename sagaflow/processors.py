"""Processors that move each kind of global transaction forward one round."""

from __future__ import annotations

import abc
import base64
import json
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .errors import FailureError, OngoingError
from .transaction import (
    OP_ACTION,
    OP_CANCEL,
    OP_COMMIT,
    OP_COMPENSATE,
    OP_CONFIRM,
    OP_ROLLBACK,
    PROTOCOL_GRPC,
    STATUS_ABORTING,
    STATUS_FAILED,
    STATUS_PREPARED,
    STATUS_SUBMITTED,
    STATUS_SUCCEED,
    CronType,
    TransBranch,
    TransGlobal,
)

MSG_TOPIC_PREFIX = "topic://"
_SAGA_WAIT_SECONDS = 3.0

TopicResolver = Callable[[str], List[str]]
ProcessorFactory = Callable[[TransGlobal, Optional[TopicResolver]], "TransProcessor"]

logger = logging.getLogger(__name__)


def _load_custom(custom_data: str) -> dict:
    data = json.loads(custom_data)
    if not isinstance(data, dict):
        raise ValueError(f"custom data must be a JSON object: {custom_data!r}")
    return data


def _timeout_reason(trans: TransGlobal) -> str:
    return f"Timeout after {trans.timeout_to_fail} seconds"


def _exec_capture(trans: TransGlobal, branch: TransBranch, pos: int) -> Optional[Exception]:
    try:
        trans.exec_branch(branch, pos)
    except Exception as exc:  # the error is the branch's outcome
        return exc
    return None


class TransProcessor(abc.ABC):
    """Drives one global transaction of a particular type."""

    def __init__(self, trans: TransGlobal) -> None:
        self.trans = trans

    def gen_branches(self) -> List[TransBranch]:
        """Return the branches to create when the transaction is submitted."""
        return []

    @abc.abstractmethod
    def process_once(self, branches: List[TransBranch]) -> None:
        """Run one round of processing over ``branches``."""


class MsgProcessor(TransProcessor):
    """Processor for two-phase messages."""

    def __init__(self, trans: TransGlobal, topic_resolver: Optional[TopicResolver] = None) -> None:
        super().__init__(trans)
        self.topic_resolver = topic_resolver

    def _urls_for(self, action: str) -> List[str]:
        topic = action.removeprefix(MSG_TOPIC_PREFIX)
        if topic == action:
            return [action]
        return list(self.topic_resolver(topic)) if self.topic_resolver else []

    def gen_branches(self) -> List[TransBranch]:
        t = self.trans
        branches: List[TransBranch] = []
        for step_no, (step, payload) in enumerate(zip(t.steps, t.bin_payloads), start=1):
            urls = self._urls_for(step.get(OP_ACTION, ""))
            if not urls:
                raise LookupError("topic not found")
            for url_no, url in enumerate(urls, start=1):
                suffix = "" if len(urls) == 1 else f"-{url_no:02d}"
                branches.append(
                    TransBranch(
                        gid=t.gid,
                        branch_id=f"{step_no:02d}{suffix}",
                        bin_data=payload,
                        url=url,
                        op=OP_ACTION,
                        status=STATUS_PREPARED,
                    )
                )
        return branches

    def may_query_prepared(self) -> None:
        """Ask the application whether a prepared message should be submitted."""
        t = self.trans
        if not t.need_process() or t.status == STATUS_SUBMITTED:
            return
        try:
            t.get_url_result(t.query_prepared, "00", "msg", None)
        except FailureError:
            t.change_status(STATUS_FAILED)
        except OngoingError:
            t.touch_cron_time(CronType.RESET)
        except Exception as exc:
            logger.error("getting result failed for %s. error: %s", t.query_prepared, exc)
            t.touch_cron_time(CronType.BACKOFF)
        else:
            t.change_status(STATUS_SUBMITTED)

    def _delay(self) -> int:
        if not self.trans.custom_data:
            return 0
        for key, value in _load_custom(self.trans.custom_data).items():
            if key.lower() == "delay":
                return int(value)
        return 0

    def process_once(self, branches: List[TransBranch]) -> None:
        t = self.trans
        self.may_query_prepared()
        if not t.need_process() or t.status == STATUS_PREPARED:
            return
        delay = self._delay()
        if delay > 0 and t.need_delay(delay):
            t.touch_cron_time(CronType.KEEP, delay)
            return

        results: "queue.Queue[Optional[Exception]]" = queue.Queue()
        started = 0
        error: Optional[Exception] = None
        for pos, branch in enumerate(branches):
            if branch.op != OP_ACTION or branch.status != STATUS_PREPARED:
                continue
            if t.concurrent:
                started += 1
                threading.Thread(
                    target=lambda b=branch, p=pos: results.put(_exec_capture(t, b, p)),
                    daemon=True,
                ).start()
            else:
                error = _exec_capture(t, branch, pos)
                if error is not None:
                    break
        for _ in range(started):
            if error is not None:
                break
            error = results.get()

        if isinstance(error, OngoingError):
            return
        if error is not None:
            raise error
        t.change_status(STATUS_SUCCEED)


@dataclass
class _BranchResult:
    index: int
    status: str
    op: str
    started: bool = False
    error: Optional[Exception] = None


class _SagaRun:
    """State of one saga processing round."""

    def __init__(
        self,
        trans: TransGlobal,
        branches: List[TransBranch],
        orders: Dict[int, List[int]],
        concurrent: bool,
    ) -> None:
        self.trans = trans
        self.branches = branches
        self.n = len(branches)
        self.orders = orders
        self.concurrent = concurrent
        self.c_orders: Dict[int, List[int]] = {}
        for step, previous in orders.items():
            for pre in previous:
                self.c_orders.setdefault(pre, []).append(step)
        self.results = [_BranchResult(i, b.status, b.op) for i, b in enumerate(branches)]
        self.done: "queue.Queue[_BranchResult]" = queue.Queue()
        actions = [b for b in branches if b.op == OP_ACTION]
        self.a_to_start = sum(1 for b in actions if b.status == STATUS_PREPARED)
        self.a_failed = sum(1 for b in actions if b.status == STATUS_FAILED)
        self.a_started = self.a_done = self.a_succeed = 0
        self.c_to_start = self.c_done = self.c_succeed = 0
        self.failure_error: Optional[Exception] = None

    def should_run(self, current: int) -> bool:
        results = self.results
        if not self.concurrent and current >= 2 and results[current - 2].status != STATUS_SUCCEED:
            return False
        return all(
            results[pre * 2 + 1].status == STATUS_SUCCEED
            for pre in self.orders.get(current // 2, [])
        )

    def _rolled_back(self, i: int) -> bool:
        return (
            self.results[i].status == STATUS_SUCCEED
            or self.results[i + 1].status == STATUS_PREPARED
        )

    def should_rollback(self, current: int) -> bool:
        if self._rolled_back(current):
            return False
        if not self.concurrent and current < self.n - 2 and not self._rolled_back(current + 2):
            return False
        return all(self._rolled_back(2 * nxt) for nxt in self.c_orders.get(current // 2, []))

    def _exec(self, index: int) -> None:
        branch = self.branches[index]
        try:
            self.trans.exec_branch(branch, index)
        except Exception as exc:
            if not isinstance(exc, OngoingError):
                logger.error(
                    "exec branch %s %s %s error: %s", branch.branch_id, branch.op, branch.url, exc
                )
        finally:
            self.done.put(_BranchResult(index, branch.status, branch.op, error=branch.error))

    def _start(self, index: int) -> None:
        threading.Thread(target=self._exec, args=(index,), daemon=True).start()

    def pick_actions(self) -> List[int]:
        picked = [
            current
            for current in range(1, self.n, 2)
            if not self.results[current].started
            and self.results[current].status == STATUS_PREPARED
            and self.should_run(current)
        ]
        logger.debug("toRun picked for action is: %s", picked)
        return picked

    def pick_compensates(self) -> List[int]:
        picked = [
            current
            for current in range(self.n - 2, -1, -2)
            if not self.results[current].started
            and self.results[current].status == STATUS_PREPARED
            and self.should_rollback(current)
        ]
        logger.debug("toRun picked for compensate is: %s", picked)
        return picked

    def run_branches(self, to_run: List[int]) -> None:
        for index in to_run:
            self.results[index].started = True
            if self.results[index].op == OP_ACTION:
                self.a_started += 1
            self._start(index)

    def wait_done_once(self) -> None:
        t = self.trans
        try:
            r = self.done.get(timeout=_SAGA_WAIT_SECONDS)
        except queue.Empty:
            logger.debug("wait once for done")
            return
        self.results[r.index].status = r.status
        if r.op == OP_ACTION:
            if t.retry_limit > 0 and r.status in (STATUS_PREPARED, STATUS_SUBMITTED):
                if t.retry_count < t.retry_limit:
                    t.retry_count += 1
                    branch = self.branches[r.index]
                    logger.info(
                        "Retrying branch %s %s %s, RetryLimit: %d, RetryCount: %d",
                        branch.branch_id,
                        branch.op,
                        branch.url,
                        t.retry_limit,
                        t.retry_count,
                    )
                    self._start(r.index)
                    return
                t.change_status(
                    STATUS_ABORTING,
                    rollback_reason=(
                        "RetryCount is greater than RetryLimit, "
                        f"RetryLimit: {t.retry_limit}"
                    ),
                )
                return
            self.a_done += 1
            if r.status == STATUS_FAILED:
                self.a_failed += 1
                self.failure_error = r.error
            elif r.status == STATUS_SUCCEED:
                self.a_succeed += 1
        else:
            self.c_done += 1
            if r.status == STATUS_SUCCEED:
                self.c_succeed += 1
        logger.debug("branch done: %s", r)

    def prepare_to_compensate(self) -> None:
        for index in self.pick_actions():
            self.results[index].started = True
        for result in self.results[1::2]:
            # these actions may have run, so compensate them as if they succeeded
            if result.started and result.status == STATUS_PREPARED:
                result.status = STATUS_SUCCEED
        for i, result in enumerate(self.results):
            if (
                result.op == OP_COMPENSATE
                and result.status != STATUS_SUCCEED
                and self.results[i + 1].status != STATUS_PREPARED
            ):
                self.c_to_start += 1
        logger.debug("rsCToStart: %d", self.c_to_start)

    def run(self) -> None:
        t = self.trans
        time_limit = time.monotonic() + t.config.request_timeout + 2
        while (
            time.monotonic() < time_limit
            and t.status == STATUS_SUBMITTED
            and not t.is_timeout()
            and self.a_failed == 0
        ):
            self.run_branches(self.pick_actions())
            if self.a_done == self.a_started:
                break
            self.wait_done_once()

        if t.status == STATUS_SUBMITTED and self.a_failed == 0 and self.a_to_start == self.a_succeed:
            t.change_status(STATUS_SUCCEED)
            return
        if t.status == STATUS_SUBMITTED and self.a_failed > 0:
            message = "fail message lost"
            if self.failure_error is not None:
                message = str(self.failure_error)
            t.change_status(STATUS_ABORTING, rollback_reason=message)
        if t.status == STATUS_SUBMITTED and t.is_timeout():
            t.change_status(STATUS_ABORTING, rollback_reason=_timeout_reason(t))
        if t.status == STATUS_ABORTING:
            self.prepare_to_compensate()
        while time.monotonic() < time_limit and t.status == STATUS_ABORTING:
            self.run_branches(self.pick_compensates())
            if self.c_done == self.c_to_start:
                break
            self.wait_done_once()
        if t.status == STATUS_ABORTING and self.c_to_start == self.c_succeed:
            t.change_status(STATUS_FAILED)


class SagaProcessor(TransProcessor):
    """Processor for sagas: actions forward, compensations in reverse."""

    def gen_branches(self) -> List[TransBranch]:
        t = self.trans
        branches: List[TransBranch] = []
        for step_no, (step, payload) in enumerate(zip(t.steps, t.bin_payloads), start=1):
            for op in (OP_COMPENSATE, OP_ACTION):
                branches.append(
                    TransBranch(
                        gid=t.gid,
                        branch_id=f"{step_no:02d}",
                        bin_data=payload,
                        url=step.get(op, ""),
                        op=op,
                        status=STATUS_PREPARED,
                    )
                )
        return branches

    def _custom(self) -> Tuple[Dict[int, List[int]], bool]:
        if not self.trans.custom_data:
            return {}, False
        data = _load_custom(self.trans.custom_data)
        orders = {
            int(step): [int(pre) for pre in previous]
            for step, previous in (data.get("orders") or {}).items()
        }
        return orders, bool(data.get("concurrent", False))

    def process_once(self, branches: List[TransBranch]) -> None:
        t = self.trans
        logger.debug("status: %s timeout: %s", t.status, t.is_timeout())
        if t.status == STATUS_SUBMITTED and t.is_timeout():
            t.change_status(STATUS_ABORTING, rollback_reason=_timeout_reason(t))
        orders, concurrent = self._custom()
        if concurrent or t.timeout_to_fail > 0:
            t.update_branch_sync = True
        _SagaRun(t, branches, orders, concurrent).run()


class TccProcessor(TransProcessor):
    """Processor for TCC: confirm or cancel the registered branches."""

    def process_once(self, branches: List[TransBranch]) -> None:
        t = self.trans
        if not t.need_process():
            return
        if t.status == STATUS_PREPARED and t.is_timeout():
            t.change_status(STATUS_ABORTING, rollback_reason=_timeout_reason(t))
        op = OP_CONFIRM if t.status == STATUS_SUBMITTED else OP_CANCEL
        for pos in reversed(range(len(branches))):
            branch = branches[pos]
            if branch.op == op and branch.status == STATUS_PREPARED:
                logger.debug("branch info: current: %d ID: %s", pos, branch.branch_id)
                t.exec_branch(branch, pos)
        t.change_status(STATUS_SUCCEED if t.status == STATUS_SUBMITTED else STATUS_FAILED)


class XaProcessor(TransProcessor):
    """Processor for XA: commit or roll back the registered branches."""

    def process_once(self, branches: List[TransBranch]) -> None:
        t = self.trans
        if not t.need_process():
            return
        if t.status == STATUS_PREPARED and t.is_timeout():
            t.change_status(STATUS_ABORTING, rollback_reason=_timeout_reason(t))
        op = OP_COMMIT if t.status == STATUS_SUBMITTED else OP_ROLLBACK
        for pos, branch in enumerate(branches):
            if branch.op == op and branch.status != STATUS_SUCCEED:
                t.exec_branch(branch, pos)
        t.change_status(STATUS_SUCCEED if t.status == STATUS_SUBMITTED else STATUS_FAILED)


def _encode_workflow_data(data: bytes) -> bytes:
    """Encode ``data`` as a message whose field 1 holds the bytes."""
    if not data:
        return b""
    out = bytearray(b"\x0a")
    length = len(data)
    while length >= 0x80:
        out.append((length & 0x7F) | 0x80)
        length >>= 7
    out.append(length)
    return bytes(out) + data


class WorkflowProcessor(TransProcessor):
    """Processor for workflows: ask the application to resume the workflow."""

    def process_once(self, branches: List[TransBranch]) -> None:
        t = self.trans
        if t.status in (STATUS_FAILED, STATUS_SUCCEED):
            return
        custom = _load_custom(t.custom_data)
        name = custom.get("name") or ""
        encoded = custom.get("data")
        data = base64.b64decode(encoded) if encoded else b""
        if t.protocol == PROTOCOL_GRPC:
            data = _encode_workflow_data(data)
        t.get_url_result(t.query_prepared, "00", name, data)


_PROCESSOR_FACTORIES: Dict[str, ProcessorFactory] = {}


def register_processor(trans_type: str, factory: ProcessorFactory) -> None:
    """Register the factory that builds processors for ``trans_type``."""
    _PROCESSOR_FACTORIES[trans_type] = factory


def create_processor(
    trans: TransGlobal, topic_resolver: Optional[TopicResolver] = None
) -> TransProcessor:
    """Build the processor registered for the transaction's type."""
    factory = _PROCESSOR_FACTORIES.get(trans.trans_type)
    if factory is None:
        raise ValueError(f"unknown trans type: {trans.trans_type}")
    return factory(trans, topic_resolver)


register_processor("msg", lambda trans, resolver: MsgProcessor(trans, resolver))
register_processor("saga", lambda trans, resolver: SagaProcessor(trans))
register_processor("tcc", lambda trans, resolver: TccProcessor(trans))
register_processor("xa", lambda trans, resolver: XaProcessor(trans))
register_processor("workflow", lambda trans, resolver: WorkflowProcessor(trans))