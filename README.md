# sagaflow

`sagaflow` is the coordinating core of a distributed transaction manager.
It holds a global transaction and its branches and moves them toward a final
state. To do that it calls the branch services over HTTP or JSON-RPC. It
retries with backoff, compensates after a saga action fails, and aborts a
transaction once its timeout has passed.

## Transaction types

`sagaflow.processors` has one processor per transaction type:

| type       | processor           | what one round does                                                          |
|------------|---------------------|------------------------------------------------------------------------------|
| `saga`     | `SagaProcessor`     | runs actions in step order, or concurrently with optional step orders; after a failure or a timeout it runs compensations in reverse |
| `msg`      | `MsgProcessor`      | queries the prepared state when needed, honours a `delay` in the custom data, then calls every action; a `topic://` step fans out to the URLs its topic resolves to |
| `tcc`      | `TccProcessor`      | confirms, or cancels, the prepared branches from last to first               |
| `xa`       | `XaProcessor`       | commits, or rolls back, every branch that has not yet succeeded              |
| `workflow` | `WorkflowProcessor` | calls the transaction's `query_prepared` URL to resume the named workflow    |

`create_processor(trans, topic_resolver)` builds the registered processor for
a `TransGlobal` from its `trans_type`. It raises `ValueError` for an unknown
type. `topic_resolver` is a callable that maps a topic name to a list of URLs.
Only message transactions use it. `register_processor(trans_type, factory)`
adds a type or replaces one.

Each processor has `gen_branches()`, which returns the branches to create for
a new transaction, and `process_once(branches)`, which runs one round.

## Transactions

`sagaflow.transaction` provides:

* `TransGlobal`: a global transaction. It is a dataclass with the gid, type,
  status, protocol, steps, payloads, timeouts and headers. `need_process()`
  and `is_timeout()` tell whether it is due for work. `exec_branch(branch,
  pos)` calls one branch, records the branch's new status, reschedules the
  transaction and re-raises any error. `change_status(status,
  rollback_reason, result)` persists a status change.
* `TransBranch`: one branch, with its URL, operation, payload and status.
* `CronType`: how the next retry is scheduled. `RESET` goes back to the
  configured retry interval, `BACKOFF` doubles the current interval and
  `KEEP` leaves it as it is.
* `ServerConfig`: server-wide settings. These are the retry interval, the
  timeout to fail, the request timeout, whether branch updates are written at
  once, the store driver name, an alert webhook and its retry limit, and an
  optional `grpc_invoker` callable.
* `Store`: an in-memory store of transactions and branches. A status change
  is written only if the stored status still matches. Otherwise it raises
  `StoreError`. Branch updates can also be queued and applied later with
  `flush_branch_updates()`.
* `gen_gid()` returns a new 22-character id. `load_trans_global(store, gid,
  config)` loads a stored transaction bound to that store and config. It
  raises `TransNotFoundError` if no transaction has that gid.

How a branch reply is read:

* HTTP 200 means success, and the branch is marked `succeed`.
* HTTP 425, or a body that contains `ONGOING`, raises `OngoingError`. The
  branch keeps its status and is retried at the current interval.
* HTTP 409, or a body that contains `FAILURE`, marks a saga action `failed`,
  and that starts the rollback. For any other branch this reply is treated as
  an unknown result.
* Any other reply raises an error and the branch is retried with backoff.
  Once the backoff reaches `alert_retry_limit` doublings and
  `alert_web_hook` is set, an alert is POSTed to the webhook.

JSON-RPC replies are also checked for the error codes -32901 (failure) and
-32902 (ongoing).

## Errors

`sagaflow.errors` defines `DtmError` and its subclasses `FailureError` and
`OngoingError`. `error_from_result("FAILURE")` and
`error_from_result("ONGOING")` return the matching exception. Any other
string, including `"SUCCESS"`, returns `None`.

## HTTP helpers

`sagaflow.webutil` has the Flask helpers:

```python
from sagaflow.webutil import create_app

app = create_app()
with app.test_client() as client:
    assert client.get("/api/ping").get_json() == {"msg": "pong"}
```

* `wrap_handler(fn)` and `wrap_handler2(fn)` wrap a view. The return value,
  or the exception the view raises, becomes the JSON reply. The status is 200,
  409 for `FailureError`, 425 for `OngoingError` and 500 for any other error.
  `wrap_handler2` also adds a `dtm_result` field, replies
  `{"dtm_result": "SUCCESS"}` when the view returns `None`, and passes a
  returned `requests.Response` through.
* `result_to_http(result)` does the `wrap_handler` conversion without Flask.
* `ErrorTrap` is a context manager. It catches an exception raised in its
  block and keeps it in `error`.
* `get_next_time(seconds)` returns the `datetime` that many seconds from now.
  `must_getwd()` returns the working directory and `get_sql_dir()` returns its
  `sqls` directory (one level up when run from `test`).
* `DEFAULT_HTTP_SERVER`, `DEFAULT_JRPC_SERVER` and `DEFAULT_GRPC_SERVER` hold
  the default local addresses.

## What the package does not do

* It has no command and no running server. It provides no HTTP or gRPC API
  for submitting transactions, and no cron loop that picks up due
  transactions. You call the processors yourself.
* `Store` lives only in memory. No database, Redis or file storage is
  included.
* gRPC branches work only through a `grpc_invoker` that you supply in
  `ServerConfig`. Without one, calling a gRPC branch raises an error.