'''
The base layer contains common utilities that are useful to other files in the project and should
have no dependency on any project files, only, native Python packages and the few third party
packages the whole project already depends on. Typically useful to share functionality from the
testing suite and the project but not limited to.
'''
import json
import traceback
import sqlite3
import datetime
import typing
import enum
import dataclasses
import logging
import math
import typing_extensions
import os
import sys
import time
import urllib3
import queue
import threading

# NOTE: Constants
SECONDS_IN_HOUR:       int     = 60 * 60
MILLISECONDS_IN_HOUR:  int     = 60 * 60 * 1000
MILLISECONDS_IN_DAY:   int     = 60 * 60 * 24 * 1000

# NOTE: Global variables
DB_PATH                        = ''
DB_PATH_IS_URI                 = False
UNSAFE_LOGGING                 = False

# NOTE: Restricted type-set, JSON obviously supports much more than this, but
# our use-case only needs a small subset of it as of current so KISS.
JSONPrimitive: typing.TypeAlias = str | int | float | bool | None
JSONValue:     typing.TypeAlias = JSONPrimitive | dict[str, 'JSONValue'] | list['JSONValue']
JSONObject:    typing.TypeAlias = dict[str, JSONValue]
JSONArray:     typing.TypeAlias = list[JSONValue]

class SubscriptionStatus(enum.StrEnum):
    """
    Status of a row in the subscriptions table. Stored as its string value in the database,
    existing values must not be changed.

    `canceled`, `expired`, `billing-issue` and `grace-period` can all transition back to `active`
    from a renewal or a re-enabled auto-renew. `revoked` is only set by a refund or a revocation and
    is not reactivated by notifications.
    """
    Active       = 'active'
    GracePeriod  = 'grace-period'
    BillingIssue = 'billing-issue'
    Canceled     = 'canceled'
    Expired      = 'expired'
    Revoked      = 'revoked'

class NotificationProcessingStatus(enum.StrEnum):
    Received  = 'received'
    Processed = 'processed'
    Failed    = 'failed'
    Duplicate = 'duplicate'

class ReceiptStatus(enum.StrEnum):
    PendingVerification = 'pending_verification'
    Verified            = 'verified'
    FailedVerification  = 'failed_verification'

class AuditStatus(enum.StrEnum):
    Success = 'SUCCESS'
    Failure = 'FAILURE'
    Warning = 'WARNING'
    Info    = 'INFO'

class ResetPeriod(enum.StrEnum):
    Minute   = 'minute'
    Hour     = 'hour'
    Day      = 'day'
    Week     = 'week'
    TwoWeeks = 'two weeks'
    Month    = 'month'
    Year     = 'year'
    Lifetime = 'lifetime'

class PlanRole(enum.StrEnum):
    Free    = 'free'
    Basic   = 'basic'
    Premium = 'premium'
    Pro     = 'pro'

class BackendError(Exception):
    '''
    Root of the errors raised by the subscription backend.

    `audit_event` is the name of the audit record that should be written when the error escapes
    a notification handler. The ingest pipeline rolls back whatever the handler had written and then
    records the audit event in a fresh transaction, so handlers describe their failure on the error
    instead of writing the FAILURE audit row themselves.
    '''
    msg:         str
    audit_event: str
    user_id:     int | None

    def __init__(self, msg: str, audit_event: str = '', user_id: int | None = None):
        super().__init__(msg)
        self.msg         = msg
        self.audit_event = audit_event
        self.user_id     = user_id

class VerificationError(BackendError):
    '''A signed payload failed signature or certificate chain verification'''

class DataInconsistencyError(BackendError):
    '''A local record required by a state transition is missing'''

class ConfigurationError(BackendError):
    '''The plan catalog is missing a referenced plan or product, or is malformed (e.g. cyclic)'''

class TransientUpstreamError(BackendError):
    '''The App Store reported the resource as not (yet) visible, retry on a later run'''

class ValidationError(BackendError):
    '''Malformed or spoofed client input'''

class LogFormatter(logging.Formatter):
    @typing_extensions.override
    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None):
        dt     = datetime.datetime.fromtimestamp(record.created)
        result = dt.strftime('%y-%m-%d %H:%M:%S.%f')[:-3]
        return result

@dataclasses.dataclass
class ErrorSink:
    '''
    Helper class to pass to functions that want to return error messages without unwinding the stack
    by using throwing exceptions.

    The typical pattern in that this construct is used is calling a sequence of functions that can
    error but have no dependency on each other. Errors are accumulated into the sink and checked at
    the end where it reports the error from the sink and returns a failure if there is one.

    See the request parsing code in server.py for an example of where this is useful.
    '''
    msg_list: list[str] = dataclasses.field(default_factory=list)

    def has(self) -> bool:
        result = len(self.msg_list) > 0
        return result

    def build(self) -> str:
        result = '\n  '.join(self.msg_list)
        return result

class SQLTransactionMode(enum.IntEnum):
    Default   = 0 # Acquires requisite r/w DB lock on first query
    Immediate = 1 # Acquires write lock and allows concurrent reads
    Exclusive = 2 # Acquires lock and blocks concurrent reads (and by definition, writes)

@dataclasses.dataclass
class SQLTransaction:
    conn:   sqlite3.Connection
    cursor: sqlite3.Cursor | None = None
    cancel: bool                  = False
    mode:   SQLTransactionMode    = SQLTransactionMode.Default
    def __init__(self, conn: sqlite3.Connection, mode: SQLTransactionMode = SQLTransactionMode.Default):
        self.conn = conn
        self.mode = mode

    def __enter__(self):
        mode_label = ''
        match self.mode:
            case SQLTransactionMode.Default:
                mode_label = 'DEFERRED '
            case SQLTransactionMode.Immediate:
                mode_label = 'IMMEDIATE '
            case SQLTransactionMode.Exclusive:
                mode_label = 'EXCLUSIVE '
        self.cursor = self.conn.execute(f'BEGIN {mode_label} TRANSACTION')
        return self

    def __exit__(self,
                 exc_type: object | None,
                 exc_value: object | None,
                 traceback: traceback.TracebackException | None):
        if self.cursor:
            self.cursor.close()
        if exc_type is not None or self.cancel:
            self.conn.rollback()
        else:
            self.conn.commit()
        return False

@dataclasses.dataclass
class TableStrings:
    name:     str = ''
    contents: list[list[str]] = dataclasses.field(default_factory=list)

class AsyncAlertWebhookLogHandler(logging.Handler):
    '''
    Log handler that forwards WARNING and above to a chat webhook (Slack/Mattermost style
    `{"text": ...}` payload). Records are queued and posted from a background thread so that
    logging never blocks a request on the network.
    '''
    webhook_url:    str
    display_name:   str
    flush_interval: float
    queue:          queue.Queue
    _thread:        threading.Thread
    _stop_event:    threading.Event
    http:           urllib3.PoolManager

    def __init__(self, webhook_url: str, display_name: str, timeout: int = 5, queue_size: int = 100, flush_interval: float = 1.0):
        super().__init__(level=logging.WARNING)
        self.webhook_url    = webhook_url
        self.display_name   = display_name
        self.queue          = queue.Queue(maxsize=queue_size)
        self.flush_interval = flush_interval

        # NOTE: PoolManager is thread-safe, it's shared by the emitting threads and the worker
        self.http = urllib3.PoolManager(timeout=urllib3.Timeout(connect=timeout, read=timeout),
                                        maxsize=4,
                                        retries=urllib3.Retry(total=1, backoff_factor=0.1))

        self._stop_event = threading.Event()
        self._thread     = threading.Thread(target=self._worker, daemon=True)
        self._thread.start()

    def _enqueue(self, text: str):
        payload = {'text': '```\n' + text[:2000] + '\n```', 'username': self.display_name}
        try:
            self.queue.put_nowait(payload)
        except queue.Full:
            # NOTE: Alerts are best effort, when the webhook is backed up we drop the newest
            pass

    @typing_extensions.override
    def emit(self, record: logging.LogRecord):
        if record.levelno < logging.WARNING:
            return
        try:
            self._enqueue(self.format(record))
        except Exception:
            self.handleError(record)

    def emit_text(self, text: str):
        self._enqueue(text)

    def _worker(self):
        while not self._stop_event.is_set():
            payloads: list[dict[str, str]] = []
            while len(payloads) < 10:
                try:
                    payloads.append(self.queue.get_nowait())
                except queue.Empty:
                    break

            for payload in payloads:
                try:
                    _ = self.http.request(method  = 'POST',
                                          url     = self.webhook_url,
                                          body    = json.dumps(payload).encode('utf-8'),
                                          headers = {'Content-Type': 'application/json'})
                except urllib3.exceptions.HTTPError as e:
                    # NOTE: Can't log through `logging` here, we'd re-enter this handler
                    print(f'[AlertWebhook] Send to {self.display_name} failed: {e}', file=sys.stderr)
                finally:
                    self.queue.task_done()

            _ = self._stop_event.wait(self.flush_interval)

    @typing_extensions.override
    def close(self):
        self._stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout=2)
        super().close()

def unix_ts_ms_now() -> int:
    result = int(time.time() * 1000)
    return result

def readable_unix_ts_ms(unix_ts_ms: int | None) -> str:
    if unix_ts_ms is None:
        return 'None'
    date_str = datetime.datetime.fromtimestamp(unix_ts_ms/1000.0).strftime('%y-%m-%d %H:%M:%S.%f')[:-3]
    result   = f'{unix_ts_ms} ({date_str})'
    return result

def round_unix_ts_ms_to_next_hour(unix_ts_ms: int) -> int:
    result: int = (unix_ts_ms + (MILLISECONDS_IN_HOUR - 1)) // MILLISECONDS_IN_HOUR * MILLISECONDS_IN_HOUR
    return result

def round_unix_ts_ms_to_start_of_hour(unix_ts_ms: int) -> int:
    result: int = unix_ts_ms // MILLISECONDS_IN_HOUR * MILLISECONDS_IN_HOUR
    return result

def print_unicode_table(rows: list[list[str]]) -> None:
    col_widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]

    def border(left: str, mid: str, right: str) -> str:
        result = left + mid.join('─' * (width + 2) for width in col_widths) + right
        return result

    def line(row: list[str]) -> str:
        result = '│' + ''.join(f' {field:<{col_widths[i]}} │' for i, field in enumerate(row))
        return result

    print(border('┌', '┬', '┐'))
    print(line(rows[0]))
    print(border('├', '┼', '┤'))
    for row in rows[1:]:
        print(line(row))
    print(border('└', '┴', '┘'))

def print_db_to_stdout_tx(tx: SQLTransaction) -> None:
    table_strings: list[TableStrings] = []
    assert tx.cursor is not None
    _           = tx.cursor.execute('SELECT name FROM sqlite_master WHERE type="table";')
    tables      = typing.cast(list[tuple[str]], tx.cursor.fetchall())
    table_names = [table[0] for table in tables]
    for table_name in table_names:
        _                       = tx.cursor.execute(f'SELECT * FROM {table_name}')
        rows                    = tx.cursor.fetchall()
        column_names: list[str] = [description[0] for description in tx.cursor.description]

        table_str: TableStrings = TableStrings()
        table_str.name          = table_name
        table_str.contents      = [column_names]

        for row in rows:
            content: list[str] = []
            for index, value in enumerate(row):
                col = column_names[index]
                if value is None:
                    content.append(str(value))
                elif col.endswith('unix_ts_ms'):
                    content.append(readable_unix_ts_ms(int(value)))
                elif isinstance(value, str) and len(value) > 96:
                    # NOTE: Raw signed payloads and receipts are large JWS blobs, truncate them
                    text = value.replace('\n', '').replace('\r', '').replace('\t', '')
                    content.append(text[:96] + f'...({len(value)})')
                else:
                    content.append(str(value))
            table_str.contents.append(content)
        table_strings.append(table_str)

    for it in table_strings:
        print(f'Table: {it.name}')
        print_unicode_table(it.contents)

def print_db_to_stdout(sql_conn: sqlite3.Connection) -> None:
    with SQLTransaction(sql_conn) as tx:
        print_db_to_stdout_tx(tx)

def format_seconds(duration_s: float) -> str:
    hours   = int(duration_s // 3600)
    minutes = int((duration_s % 3600) // 60)
    seconds = duration_s % 60
    result  = ''
    if hours > 0:
        result += f"{hours}h"
    if minutes > 0:
        result += f"{' ' if result else ''}{minutes}m"
    if seconds >= 1 or result == '':
        sec_str = str(int(seconds)) if seconds == int(seconds) else f"{seconds:.3f}".rstrip('0').rstrip('.')
        result += f"{' ' if result else ''}{sec_str}s"
    return result

def obfuscate(val: str) -> str:
    """
    Obfuscate a string by masking the contents preserving the prefix and suffix. If the string is
    less than 3 characters, the original string is retuned.
    """
    if len(val) < 3:
        return val
    n_ends = max(math.floor(len(val) * 0.3), 1)
    return f"{val[:n_ends]}…{val[-n_ends:]}"

def safe_dump_dict_keys_or_data(d: dict[str, typing.Any] | None) -> str:
    """Dump the dict or just the keys if UNSAFE_LOGGING is not set"""
    if d is None:
        return "None"
    if UNSAFE_LOGGING:
        return json.dumps(d)
    return "dictionary w/ keys: {" + ', '.join(d.keys()) + "}"

def safe_dump_arbitrary_value_or_type(v: typing.Any) -> str:  # pyright: ignore[reportAny]
    """Dump the value or just its type if UNSAFE_LOGGING is set"""
    result = f'({type(v)}) {v}' if UNSAFE_LOGGING else f'{type(v)}'
    return result

def safe_get_dict_value_type(d: dict[str, typing.Any], key: str) -> str:
    v = d.get(key)
    return safe_dump_arbitrary_value_or_type(v)

def json_dict_require_str(d: JSONObject, key: str, err: ErrorSink) -> str:
    result = ''
    if key in d:
        if isinstance(d[key], str):
            result = typing.cast(str, d[key])
        else:
            err.msg_list.append(f'Key "{key}" value was not a string: "{safe_get_dict_value_type(d, key)}"')
    else:
        err.msg_list.append(f'Required key "{key}" is missing from JSON: {safe_dump_dict_keys_or_data(d)}')
    return result

def json_dict_require_int(d: JSONObject, key: str, err: ErrorSink) -> int:
    result = 0
    if key in d:
        # NOTE: bool is a subclass of int, reject it explicitly
        if isinstance(d[key], int) and not isinstance(d[key], bool):
            result = typing.cast(int, d[key])
        else:
            err.msg_list.append(f'Key "{key}" value was not an integer: "{safe_get_dict_value_type(d, key)}"')
    else:
        err.msg_list.append(f'Required key "{key}" is missing from JSON: {safe_dump_dict_keys_or_data(d)}')
    return result

def json_dict_require_int_or_int_str(d: JSONObject, key: str, err: ErrorSink) -> int:
    '''Clients send user identifiers both as JSON numbers and as strings of digits'''
    result = 0
    value  = d.get(key)
    if isinstance(value, str):
        try:
            result = int(value)
        except ValueError as e:
            err.msg_list.append(f'Unable to parse {key} type to an int: {e}')
    else:
        result = json_dict_require_int(d, key, err)
    return result

def os_get_boolean_env(var_name: str, default: bool = False):
    value = os.getenv(var_name, str(int(default)))  # Default to 0 or 1
    if value == '1':
        return True
    elif value == '0':
        return False
    else:
        raise ValueError(f"Invalid value for environment variable '{var_name}': {value}. Allowed values are 0 or 1.")
