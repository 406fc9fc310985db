'''
The DB layer of the subscription backend. All persistent state lives in a single SQLite database
and this file owns its schema, the typed rows read out of it and the functions that mutate it.

Functions suffixed with `_tx` operate inside a caller supplied `base.SQLTransaction` and never
commit on their own, the caller decides the transaction boundary (the notification pipeline for
example runs a whole handler inside one transaction and rolls it back on failure). Functions without
the suffix open and close their own transaction.
'''

import traceback
import sqlite3
import os
import typing
import dataclasses
import logging
import enum
import json

import base

log = logging.Logger("BACKEND")

@dataclasses.dataclass
class SQLField:
    name: str = ''
    type: str = ''

SQL_TABLE_PLANS_FIELD: list[SQLField] = [
  SQLField('name',                  'TEXT NOT NULL'),
  SQLField('product_id',            'TEXT'),             # App Store product identifier, NULL for plans not sold on the store (e.g. free tier)
  SQLField('display_order',         'INTEGER NOT NULL'),
  SQLField('inherit_from_id',       'INTEGER'),          # Parent plan whose features and entitlements this plan starts from
  SQLField('role',                  'TEXT'),             # `base.PlanRole`
  SQLField('sale_product_id',       'TEXT'),             # Product identifier to present instead of `product_id` during the sale window
  SQLField('sale_start_unix_ts_ms', 'INTEGER'),
  SQLField('sale_end_unix_ts_ms',   'INTEGER'),
]

SQL_TABLE_FEATURES_FIELD: list[SQLField] = [
  SQLField('feature',       'TEXT NOT NULL'),            # Human readable feature line shown on the plan
  SQLField('display_order', 'INTEGER NOT NULL'),
]

SQL_TABLE_PLAN_FEATURES_FIELD: list[SQLField] = [
  SQLField('plan_id',    'INTEGER NOT NULL'),
  SQLField('feature_id', 'INTEGER NOT NULL'),
]

SQL_TABLE_ENTITLEMENTS_FIELD: list[SQLField] = [
  SQLField('name',          'TEXT NOT NULL'),
  SQLField('slug',          'TEXT NOT NULL UNIQUE'),
  SQLField('is_metered',    'INTEGER NOT NULL'),
  SQLField('default_limit', 'INTEGER'),                  # NULL means unlimited
  SQLField('reset_period',  'TEXT'),                     # `base.ResetPeriod`
]

SQL_TABLE_PLAN_ENTITLEMENT_LINKS_FIELD: list[SQLField] = [
  SQLField('plan_id',        'INTEGER NOT NULL'),
  SQLField('entitlement_id', 'INTEGER NOT NULL'),
  SQLField('limit_override', 'INTEGER'),                 # Replaces the entitlement's `default_limit` when set
]

SQL_TABLE_SUBSCRIPTIONS_FIELD: list[SQLField] = [
  SQLField('user_id',            'INTEGER NOT NULL'),
  SQLField('plan_id',            'INTEGER'),
  SQLField('status',             'TEXT NOT NULL'),       # `base.SubscriptionStatus`

  # Time at which the subscription lapses. NULL for subscriptions that never expire, which is only
  # the free tier.
  SQLField('expiry_unix_ts_ms',  'INTEGER'),

  # The App Store original transaction ID, constant across every renewal of the purchase. Inbound
  # notifications never reference our row ID, this is the only key that links them to a row.
  SQLField('original_tx_id',     'TEXT'),
  SQLField('latest_tx_id',       'TEXT'),
  SQLField('start_unix_ts_ms',   'INTEGER NOT NULL'),
  SQLField('revoked_unix_ts_ms', 'INTEGER'),
  SQLField('revocation_reason',  'TEXT'),
  SQLField('created_unix_ts_ms', 'INTEGER NOT NULL'),
  SQLField('updated_unix_ts_ms', 'INTEGER NOT NULL'),
]

SQL_TABLE_APPLE_NOTIFICATIONS_FIELD: list[SQLField] = [
  SQLField('raw_signed_payload', 'TEXT NOT NULL'),       # Exactly as received, never modified after insertion
  SQLField('notification_uuid',  'TEXT'),
  SQLField('notification_type',  'TEXT'),
  SQLField('subtype',            'TEXT'),
  SQLField('original_tx_id',     'TEXT'),
  SQLField('processing_status',  'TEXT NOT NULL'),       # `base.NotificationProcessingStatus`
  SQLField('tx_info',            'TEXT'),                # JSON of the verified and decoded signedTransactionInfo
  SQLField('subscription_id',    'INTEGER'),
  SQLField('created_unix_ts_ms', 'INTEGER NOT NULL'),
  SQLField('updated_unix_ts_ms', 'INTEGER NOT NULL'),
]

SQL_TABLE_APPLE_RECEIPTS_FIELD: list[SQLField] = [
  SQLField('transaction_id',          'TEXT NOT NULL UNIQUE'),
  SQLField('user_id',                 'INTEGER NOT NULL'),
  SQLField('raw_receipt',             'TEXT NOT NULL'),
  SQLField('status',                  'TEXT NOT NULL'),  # `base.ReceiptStatus`
  SQLField('verification_attempts',   'INTEGER NOT NULL'),
  SQLField('last_attempt_unix_ts_ms', 'INTEGER'),
  SQLField('created_unix_ts_ms',      'INTEGER NOT NULL'),
  SQLField('updated_unix_ts_ms',      'INTEGER NOT NULL'),
]

SQL_TABLE_AUDIT_LOG_FIELD: list[SQLField] = [
  SQLField('event',              'TEXT NOT NULL'),
  SQLField('status',             'TEXT NOT NULL'),       # `base.AuditStatus`
  SQLField('message',            'TEXT NOT NULL'),
  SQLField('details',            'TEXT'),                # JSON object
  SQLField('user_id',            'INTEGER'),
  SQLField('notification_id',    'INTEGER'),
  SQLField('created_unix_ts_ms', 'INTEGER NOT NULL'),
]

# NOTE: Tables reachable through the generic create/find/update functions. Column names passed to
# those functions are checked against these lists as they are interpolated into the SQL.
SQL_TABLES: dict[str, list[SQLField]] = {
  'plans':                  SQL_TABLE_PLANS_FIELD,
  'features':               SQL_TABLE_FEATURES_FIELD,
  'plan_features':          SQL_TABLE_PLAN_FEATURES_FIELD,
  'entitlements':           SQL_TABLE_ENTITLEMENTS_FIELD,
  'plan_entitlement_links': SQL_TABLE_PLAN_ENTITLEMENT_LINKS_FIELD,
  'subscriptions':          SQL_TABLE_SUBSCRIPTIONS_FIELD,
  'apple_notifications':    SQL_TABLE_APPLE_NOTIFICATIONS_FIELD,
  'apple_receipts':         SQL_TABLE_APPLE_RECEIPTS_FIELD,
  'audit_log':              SQL_TABLE_AUDIT_LOG_FIELD,
}

SQLTableSubscriptionRowTuple: typing.TypeAlias = tuple[int,         # id
                                                       int,         # user_id
                                                       int | None,  # plan_id
                                                       str,         # status
                                                       int | None,  # expiry_unix_ts_ms
                                                       str | None,  # original_tx_id
                                                       str | None,  # latest_tx_id
                                                       int,         # start_unix_ts_ms
                                                       int | None,  # revoked_unix_ts_ms
                                                       str | None,  # revocation_reason
                                                       int,         # created_unix_ts_ms
                                                       int]         # updated_unix_ts_ms

SQLTableAppleReceiptRowTuple:  typing.TypeAlias = tuple[int,        # id
                                                        str,        # transaction_id
                                                        int,        # user_id
                                                        str,        # raw_receipt
                                                        str,        # status
                                                        int,        # verification_attempts
                                                        int | None, # last_attempt_unix_ts_ms
                                                        int,        # created_unix_ts_ms
                                                        int]        # updated_unix_ts_ms

class SQLFilterOp(enum.Enum):
    Eq = 0
    Ne = 1
    In = 2

@dataclasses.dataclass
class SQLFilter:
    '''A predicate on a single column. `In` expects `value` to be a list.'''
    column: str         = ''
    op:     SQLFilterOp = SQLFilterOp.Eq
    value:  typing.Any  = None

@dataclasses.dataclass
class FeatureRow:
    id:            int = 0
    feature:       str = ''
    display_order: int = 0

@dataclasses.dataclass
class EntitlementRow:
    id:            int                     = 0
    name:          str                     = ''
    slug:          str                     = ''
    is_metered:    bool                    = False
    default_limit: int | None              = None
    reset_period:  base.ResetPeriod | None = None

@dataclasses.dataclass
class PlanEntitlementLinkRow:
    id:             int            = 0
    plan_id:        int            = 0
    entitlement:    EntitlementRow = dataclasses.field(default_factory=EntitlementRow)
    limit_override: int | None     = None

@dataclasses.dataclass
class PlanRow:
    id:                    int                          = 0
    name:                  str                          = ''
    product_id:            str | None                   = None
    display_order:         int                          = 0
    inherit_from_id:       int | None                   = None
    role:                  base.PlanRole | None         = None
    sale_product_id:       str | None                   = None
    sale_start_unix_ts_ms: int | None                   = None
    sale_end_unix_ts_ms:   int | None                   = None

    # NOTE: Only populated when loaded through `get_plan_catalog_tx`
    features:              list[FeatureRow]             = dataclasses.field(default_factory=list)
    entitlement_links:     list[PlanEntitlementLinkRow] = dataclasses.field(default_factory=list)

@dataclasses.dataclass
class SubscriptionRow:
    id:                 int                     = 0
    user_id:            int                     = 0
    plan_id:            int | None              = None
    status:             base.SubscriptionStatus = base.SubscriptionStatus.Active
    expiry_unix_ts_ms:  int | None              = None
    original_tx_id:     str | None              = None
    latest_tx_id:       str | None              = None
    start_unix_ts_ms:   int                     = 0
    revoked_unix_ts_ms: int | None              = None
    revocation_reason:  str | None              = None
    created_unix_ts_ms: int                     = 0
    updated_unix_ts_ms: int                     = 0

@dataclasses.dataclass
class AppleNotificationRow:
    id:                 int                               = 0
    raw_signed_payload: str                               = ''
    notification_uuid:  str | None                        = None
    notification_type:  str | None                        = None
    subtype:            str | None                        = None
    original_tx_id:     str | None                        = None
    processing_status:  base.NotificationProcessingStatus = base.NotificationProcessingStatus.Received
    tx_info:            base.JSONObject | None            = None
    subscription_id:    int | None                        = None
    created_unix_ts_ms: int                               = 0
    updated_unix_ts_ms: int                               = 0

@dataclasses.dataclass
class AppleReceiptRow:
    id:                      int                = 0
    transaction_id:          str                = ''
    user_id:                 int                = 0
    raw_receipt:             str                = ''
    status:                  base.ReceiptStatus = base.ReceiptStatus.PendingVerification
    verification_attempts:   int                = 0
    last_attempt_unix_ts_ms: int | None         = None
    created_unix_ts_ms:      int                = 0
    updated_unix_ts_ms:      int                = 0

@dataclasses.dataclass
class AuditLogRow:
    id:                 int              = 0
    event:              str              = ''
    status:             base.AuditStatus = base.AuditStatus.Info
    message:            str              = ''
    details:            base.JSONObject  = dataclasses.field(default_factory=dict)
    user_id:            int | None       = None
    notification_id:    int | None       = None
    created_unix_ts_ms: int              = 0

@dataclasses.dataclass
class RuntimeRow:
    '''The runtime table stores metadata used for book-keeping of the background jobs.

    last_reconcile_unix_ts_ms - Start of the most recent hourly slot that the receipt reconciliation
    job was claimed for. Every worker process runs the scheduler thread, the first one to advance
    this timestamp inside an exclusive transaction runs the job, the rest observe it was already
    done by someone else and no-op.
    '''
    last_reconcile_unix_ts_ms: int = 0

@dataclasses.dataclass
class ClaimReconcileResult:
    already_done_by_someone_else: bool = False
    last_reconcile_unix_ts_ms:    int  = 0

@dataclasses.dataclass
class SetupDBResult:
    """
    Class is returned by backend.setup_db() which opens the DB and maintains a connection to the DB
    via `sql_conn`. Caller must close `sql_conn` if they wish to release the connection from the DB.
    The setup function creates the tables required to operate the subscription backend.

    Normally you would not return the DB connection as it's easy to accidentally leak the DB
    connection in this object however we also use this in tests which use an in-memory transient DB.
    If we were to close connection before returning to the user, the DB will be wiped from memory
    making it useless for tests.
    """
    path:     str                       = ''
    success:  bool                      = False
    runtime:  RuntimeRow                = dataclasses.field(default_factory=RuntimeRow)
    sql_conn: sqlite3.Connection | None = None

@dataclasses.dataclass
class OpenDBAtPath:
    """
    Open a pre-existing DB at the specified path. This class should be used in a `with` context to
    ensure that the connection established to the database is closed on scope exit, e.g.:

    with OpenDBAtPath(...) as db:
        # Use db.sql_conn =
        pass
    """

    sql_conn: sqlite3.Connection
    def __init__(self, db_path: str, uri: bool = False):
        self.sql_conn = sqlite3.connect(db_path, uri=uri)

    def __enter__(self):
        return self

    def __exit__(self,
                 exc_type:  object | None,
                 exc_value: object | None,
                 traceback: traceback.TracebackException | None):
        self.sql_conn.close()
        return False

def string_from_sql_fields(fields: list[SQLField], schema: bool) -> str:
    result: str = ''
    if schema:
        result = ',\n'.join([f'{it.name} {it.type}' for it in fields])
    else:
        result = ', '.join([it.name for it in fields])
    return result

def _verify_columns(table: str, columns: typing.Iterable[str]):
    assert table in SQL_TABLES, f'Unknown table: {table}'
    known: set[str] = {it.name for it in SQL_TABLES[table]}
    known.add('id')
    for it in columns:
        assert it in known, f'Unknown column "{it}" for table "{table}"'

def create_row_tx(tx: base.SQLTransaction, table: str, fields: dict[str, typing.Any]) -> int:
    assert tx.cursor is not None
    _verify_columns(table, fields.keys())
    columns      = ', '.join(fields.keys())
    placeholders = ', '.join(['?'] * len(fields))
    _            = tx.cursor.execute(f'INSERT INTO {table} ({columns}) VALUES ({placeholders})', tuple(fields.values()))
    assert tx.cursor.lastrowid is not None
    result: int  = tx.cursor.lastrowid
    return result

def find_rows_tx(tx:         base.SQLTransaction,
                 table:      str,
                 filters:    list[SQLFilter],
                 order_by:   str        = 'id',
                 descending: bool       = False,
                 limit:      int | None = None) -> list[tuple[typing.Any, ...]]:
    '''
    Select `id` followed by every column of `table` (in declaration order) for rows matching all of
    the `filters`.
    '''
    assert tx.cursor is not None
    _verify_columns(table, [it.column for it in filters] + [order_by])

    clauses: list[str]        = []
    params:  list[typing.Any] = []
    for it in filters:
        match it.op:
            case SQLFilterOp.Eq:
                if it.value is None:
                    clauses.append(f'{it.column} IS NULL')
                else:
                    clauses.append(f'{it.column} = ?')
                    params.append(it.value)
            case SQLFilterOp.Ne:
                if it.value is None:
                    clauses.append(f'{it.column} IS NOT NULL')
                else:
                    clauses.append(f'({it.column} IS NULL OR {it.column} != ?)')
                    params.append(it.value)
            case SQLFilterOp.In:
                values = list(it.value)
                if len(values) == 0:
                    clauses.append('0')
                else:
                    clauses.append(f'{it.column} IN ({", ".join(["?"] * len(values))})')
                    params.extend(values)

    sql = f'SELECT id, {string_from_sql_fields(SQL_TABLES[table], schema=False)} FROM {table}'
    if len(clauses):
        sql += ' WHERE ' + ' AND '.join(clauses)
    # NOTE: `id` is a tie-breaker so that rows inserted in the same millisecond keep insertion order
    direction = 'DESC' if descending else 'ASC'
    sql += f' ORDER BY {order_by} {direction}, id {direction}'
    if limit is not None:
        sql += ' LIMIT ?'
        params.append(limit)

    _      = tx.cursor.execute(sql, tuple(params))
    result = typing.cast(list[tuple[typing.Any, ...]], tx.cursor.fetchall())
    return result

def update_row_tx(tx: base.SQLTransaction, table: str, row_id: int, fields: dict[str, typing.Any]) -> bool:
    assert tx.cursor is not None
    _verify_columns(table, fields.keys())
    assignments = ', '.join([f'{it} = ?' for it in fields.keys()])
    _           = tx.cursor.execute(f'UPDATE {table} SET {assignments} WHERE id = ?', (*fields.values(), row_id))
    assert tx.cursor.rowcount == 0 or tx.cursor.rowcount == 1
    result      = tx.cursor.rowcount == 1
    return result

def plan_row_from_tuple(row: tuple[typing.Any, ...]) -> PlanRow:
    result                       = PlanRow()
    result.id                    = row[0]
    result.name                  = row[1]
    result.product_id            = row[2]
    result.display_order         = row[3]
    result.inherit_from_id       = row[4]
    result.role                  = base.PlanRole(row[5]) if row[5] else None
    result.sale_product_id       = row[6]
    result.sale_start_unix_ts_ms = row[7]
    result.sale_end_unix_ts_ms   = row[8]
    return result

def subscription_row_from_tuple(row: SQLTableSubscriptionRowTuple) -> SubscriptionRow:
    result                    = SubscriptionRow()
    result.id                 = row[0]
    result.user_id            = row[1]
    result.plan_id            = row[2]
    result.status             = base.SubscriptionStatus(row[3])
    result.expiry_unix_ts_ms  = row[4]
    result.original_tx_id     = row[5]
    result.latest_tx_id       = row[6]
    result.start_unix_ts_ms   = row[7]
    result.revoked_unix_ts_ms = row[8]
    result.revocation_reason  = row[9]
    result.created_unix_ts_ms = row[10]
    result.updated_unix_ts_ms = row[11]
    return result

def apple_notification_row_from_tuple(row: tuple[typing.Any, ...]) -> AppleNotificationRow:
    result                    = AppleNotificationRow()
    result.id                 = row[0]
    result.raw_signed_payload = row[1]
    result.notification_uuid  = row[2]
    result.notification_type  = row[3]
    result.subtype            = row[4]
    result.original_tx_id     = row[5]
    result.processing_status  = base.NotificationProcessingStatus(row[6])
    result.tx_info            = json.loads(row[7]) if row[7] else None
    result.subscription_id    = row[8]
    result.created_unix_ts_ms = row[9]
    result.updated_unix_ts_ms = row[10]
    return result

def apple_receipt_row_from_tuple(row: SQLTableAppleReceiptRowTuple) -> AppleReceiptRow:
    result                         = AppleReceiptRow()
    result.id                      = row[0]
    result.transaction_id          = row[1]
    result.user_id                 = row[2]
    result.raw_receipt             = row[3]
    result.status                  = base.ReceiptStatus(row[4])
    result.verification_attempts   = row[5]
    result.last_attempt_unix_ts_ms = row[6]
    result.created_unix_ts_ms      = row[7]
    result.updated_unix_ts_ms      = row[8]
    return result

def audit_log_row_from_tuple(row: tuple[typing.Any, ...]) -> AuditLogRow:
    result                    = AuditLogRow()
    result.id                 = row[0]
    result.event              = row[1]
    result.status             = base.AuditStatus(row[2])
    result.message            = row[3]
    result.details            = json.loads(row[4]) if row[4] else {}
    result.user_id            = row[5]
    result.notification_id    = row[6]
    result.created_unix_ts_ms = row[7]
    return result

def add_plan_tx(tx:                    base.SQLTransaction,
                name:                  str,
                product_id:            str | None,
                display_order:         int                  = 0,
                inherit_from_id:       int | None           = None,
                role:                  base.PlanRole | None = None,
                sale_product_id:       str | None           = None,
                sale_start_unix_ts_ms: int | None           = None,
                sale_end_unix_ts_ms:   int | None           = None) -> int:
    result = create_row_tx(tx, 'plans', {'name':                  name,
                                         'product_id':            product_id,
                                         'display_order':         display_order,
                                         'inherit_from_id':       inherit_from_id,
                                         'role':                  role.value if role else None,
                                         'sale_product_id':       sale_product_id,
                                         'sale_start_unix_ts_ms': sale_start_unix_ts_ms,
                                         'sale_end_unix_ts_ms':   sale_end_unix_ts_ms})
    return result

def set_plan_inherit_from_tx(tx: base.SQLTransaction, plan_id: int, inherit_from_id: int | None) -> bool:
    result = update_row_tx(tx, 'plans', plan_id, {'inherit_from_id': inherit_from_id})
    return result

def add_feature_tx(tx: base.SQLTransaction, feature: str, display_order: int) -> int:
    result = create_row_tx(tx, 'features', {'feature': feature, 'display_order': display_order})
    return result

def add_plan_feature_tx(tx: base.SQLTransaction, plan_id: int, feature_id: int):
    _ = create_row_tx(tx, 'plan_features', {'plan_id': plan_id, 'feature_id': feature_id})

def add_entitlement_tx(tx:            base.SQLTransaction,
                       name:          str,
                       slug:          str,
                       is_metered:    bool,
                       default_limit: int | None,
                       reset_period:  base.ResetPeriod | None) -> int:
    result = create_row_tx(tx, 'entitlements', {'name':          name,
                                                'slug':          slug,
                                                'is_metered':    int(is_metered),
                                                'default_limit': default_limit,
                                                'reset_period':  reset_period.value if reset_period else None})
    return result

def add_plan_entitlement_link_tx(tx: base.SQLTransaction, plan_id: int, entitlement_id: int, limit_override: int | None) -> int:
    result = create_row_tx(tx, 'plan_entitlement_links', {'plan_id':        plan_id,
                                                          'entitlement_id': entitlement_id,
                                                          'limit_override': limit_override})
    return result

def _get_single_plan_tx(tx: base.SQLTransaction, filters: list[SQLFilter]) -> PlanRow | None:
    rows   = find_rows_tx(tx, 'plans', filters, order_by='display_order', limit=1)
    result = plan_row_from_tuple(rows[0]) if len(rows) else None
    return result

def get_plan_by_id_tx(tx: base.SQLTransaction, plan_id: int) -> PlanRow | None:
    return _get_single_plan_tx(tx, [SQLFilter('id', SQLFilterOp.Eq, plan_id)])

def get_plan_by_product_id_tx(tx: base.SQLTransaction, product_id: str) -> PlanRow | None:
    return _get_single_plan_tx(tx, [SQLFilter('product_id', SQLFilterOp.Eq, product_id)])

def get_plan_by_sale_product_id_tx(tx: base.SQLTransaction, sale_product_id: str) -> PlanRow | None:
    return _get_single_plan_tx(tx, [SQLFilter('sale_product_id', SQLFilterOp.Eq, sale_product_id)])

def get_plan_by_name_tx(tx: base.SQLTransaction, name: str) -> PlanRow | None:
    return _get_single_plan_tx(tx, [SQLFilter('name', SQLFilterOp.Eq, name)])

def get_plan_catalog_tx(tx: base.SQLTransaction) -> dict[int, PlanRow]:
    '''
    Load every plan with its directly owned features and entitlement links into a map keyed by
    plan ID. The map preserves the plans' display order.
    '''
    assert tx.cursor is not None
    result: dict[int, PlanRow] = {}
    for row in find_rows_tx(tx, 'plans', [], order_by='display_order'):
        plan            = plan_row_from_tuple(row)
        result[plan.id] = plan

    _    = tx.cursor.execute('''
        SELECT   plan_features.plan_id, features.id, features.feature, features.display_order
        FROM     plan_features
        JOIN     features ON features.id = plan_features.feature_id
        ORDER BY features.display_order, features.id
    ''')
    for feature_row in typing.cast(list[tuple[int, int, str, int]], tx.cursor.fetchall()):
        plan_id = feature_row[0]
        if plan_id in result:
            result[plan_id].features.append(FeatureRow(id=feature_row[1], feature=feature_row[2], display_order=feature_row[3]))

    _    = tx.cursor.execute('''
        SELECT   links.id, links.plan_id, links.limit_override,
                 entitlements.id, entitlements.name, entitlements.slug, entitlements.is_metered,
                 entitlements.default_limit, entitlements.reset_period
        FROM     plan_entitlement_links AS links
        JOIN     entitlements ON entitlements.id = links.entitlement_id
        ORDER BY links.id
    ''')
    for link_row in typing.cast(list[tuple[int, int, int | None, int, str, str, int, int | None, str | None]], tx.cursor.fetchall()):
        link                           = PlanEntitlementLinkRow()
        link.id                        = link_row[0]
        link.plan_id                   = link_row[1]
        link.limit_override            = link_row[2]
        link.entitlement.id            = link_row[3]
        link.entitlement.name          = link_row[4]
        link.entitlement.slug          = link_row[5]
        link.entitlement.is_metered    = bool(link_row[6])
        link.entitlement.default_limit = link_row[7]
        link.entitlement.reset_period  = base.ResetPeriod(link_row[8]) if link_row[8] else None
        if link.plan_id in result:
            result[link.plan_id].entitlement_links.append(link)
    return result

def add_subscription_tx(tx:                base.SQLTransaction,
                        user_id:           int,
                        plan_id:           int | None,
                        status:            base.SubscriptionStatus,
                        expiry_unix_ts_ms: int | None,
                        original_tx_id:    str | None,
                        latest_tx_id:      str | None,
                        unix_ts_ms:        int) -> SubscriptionRow:
    result                    = SubscriptionRow()
    result.user_id            = user_id
    result.plan_id            = plan_id
    result.status             = status
    result.expiry_unix_ts_ms  = expiry_unix_ts_ms
    result.original_tx_id     = original_tx_id
    result.latest_tx_id       = latest_tx_id
    result.start_unix_ts_ms   = unix_ts_ms
    result.created_unix_ts_ms = unix_ts_ms
    result.updated_unix_ts_ms = unix_ts_ms
    result.id                 = create_row_tx(tx, 'subscriptions', {'user_id':            result.user_id,
                                                                    'plan_id':            result.plan_id,
                                                                    'status':             result.status.value,
                                                                    'expiry_unix_ts_ms':  result.expiry_unix_ts_ms,
                                                                    'original_tx_id':     result.original_tx_id,
                                                                    'latest_tx_id':       result.latest_tx_id,
                                                                    'start_unix_ts_ms':   result.start_unix_ts_ms,
                                                                    'created_unix_ts_ms': result.created_unix_ts_ms,
                                                                    'updated_unix_ts_ms': result.updated_unix_ts_ms})
    log.info(f'Created subscription {result.id} for user {user_id} (plan={plan_id}, status={status}, orig. tx={original_tx_id}, expiry={base.readable_unix_ts_ms(expiry_unix_ts_ms)})')
    return result

def update_subscription_tx(tx: base.SQLTransaction, sub: SubscriptionRow, unix_ts_ms: int) -> bool:
    '''Write back every mutable field of `sub`, bumping its updated timestamp'''
    sub.updated_unix_ts_ms = unix_ts_ms
    result                 = update_row_tx(tx, 'subscriptions', sub.id, {'plan_id':            sub.plan_id,
                                                                         'status':             sub.status.value,
                                                                         'expiry_unix_ts_ms':  sub.expiry_unix_ts_ms,
                                                                         'original_tx_id':     sub.original_tx_id,
                                                                         'latest_tx_id':       sub.latest_tx_id,
                                                                         'revoked_unix_ts_ms': sub.revoked_unix_ts_ms,
                                                                         'revocation_reason':  sub.revocation_reason,
                                                                         'updated_unix_ts_ms': sub.updated_unix_ts_ms})
    return result

def get_subscription_tx(tx: base.SQLTransaction, subscription_id: int) -> SubscriptionRow | None:
    rows   = find_rows_tx(tx, 'subscriptions', [SQLFilter('id', SQLFilterOp.Eq, subscription_id)])
    result = subscription_row_from_tuple(typing.cast(SQLTableSubscriptionRowTuple, rows[0])) if len(rows) else None
    return result

def get_subscriptions_for_user_tx(tx: base.SQLTransaction, user_id: int) -> list[SubscriptionRow]:
    rows   = find_rows_tx(tx, 'subscriptions', [SQLFilter('user_id', SQLFilterOp.Eq, user_id)])
    result = [subscription_row_from_tuple(typing.cast(SQLTableSubscriptionRowTuple, it)) for it in rows]
    return result

def get_active_subscriptions_for_user_tx(tx: base.SQLTransaction, user_id: int, exclude_id: int | None = None) -> list[SubscriptionRow]:
    filters: list[SQLFilter] = [SQLFilter('user_id', SQLFilterOp.Eq, user_id),
                                SQLFilter('status',  SQLFilterOp.Eq, base.SubscriptionStatus.Active.value)]
    if exclude_id is not None:
        filters.append(SQLFilter('id', SQLFilterOp.Ne, exclude_id))
    rows   = find_rows_tx(tx, 'subscriptions', filters, order_by='created_unix_ts_ms', descending=True)
    result = [subscription_row_from_tuple(typing.cast(SQLTableSubscriptionRowTuple, it)) for it in rows]
    return result

def get_active_subscription_for_user_tx(tx: base.SQLTransaction, user_id: int) -> SubscriptionRow | None:
    subs   = get_active_subscriptions_for_user_tx(tx, user_id)
    result = subs[0] if len(subs) else None
    return result

def find_subscription_by_original_tx_id_tx(tx: base.SQLTransaction, original_tx_id: str) -> SubscriptionRow | None:
    '''
    Several rows can share an original transaction ID, e.g. the free tier fallback created after an
    expiry keeps the expired purchase's ID. Prefer the newest active row, otherwise the newest row.
    '''
    by_orig_tx_id = SQLFilter('original_tx_id', SQLFilterOp.Eq, original_tx_id)
    rows          = find_rows_tx(tx,
                                 'subscriptions',
                                 [by_orig_tx_id, SQLFilter('status', SQLFilterOp.Eq, base.SubscriptionStatus.Active.value)],
                                 order_by='created_unix_ts_ms',
                                 descending=True,
                                 limit=1)
    if len(rows) == 0:
        rows = find_rows_tx(tx, 'subscriptions', [by_orig_tx_id], order_by='created_unix_ts_ms', descending=True, limit=1)

    result = subscription_row_from_tuple(typing.cast(SQLTableSubscriptionRowTuple, rows[0])) if len(rows) else None
    return result

def cancel_active_subscriptions_tx(tx: base.SQLTransaction, user_id: int, keep_id: int | None, unix_ts_ms: int) -> int:
    '''
    Cancel every active subscription of the user except `keep_id`. Must be called before a row is
    made active, a user may only ever have one active subscription (also enforced by a unique
    partial index).
    '''
    result = 0
    for it in get_active_subscriptions_for_user_tx(tx, user_id, exclude_id=keep_id):
        it.status = base.SubscriptionStatus.Canceled
        if update_subscription_tx(tx, it, unix_ts_ms):
            result += 1
            log.info(f'Canceled superseded subscription {it.id} for user {user_id}')
    return result

def add_apple_notification(sql_conn: sqlite3.Connection, raw_signed_payload: str, unix_ts_ms: int) -> int:
    with base.SQLTransaction(sql_conn) as tx:
        result = create_row_tx(tx, 'apple_notifications', {'raw_signed_payload': raw_signed_payload,
                                                           'processing_status':  base.NotificationProcessingStatus.Received.value,
                                                           'created_unix_ts_ms': unix_ts_ms,
                                                           'updated_unix_ts_ms': unix_ts_ms})
    return result

def update_apple_notification_tx(tx:                base.SQLTransaction,
                                 notification_id:   int,
                                 unix_ts_ms:        int,
                                 processing_status: base.NotificationProcessingStatus | None = None,
                                 notification_uuid: str | None                               = None,
                                 notification_type: str | None                               = None,
                                 subtype:           str | None                               = None,
                                 original_tx_id:    str | None                               = None,
                                 tx_info:           base.JSONObject | None                   = None,
                                 subscription_id:   int | None                               = None) -> bool:
    '''Update the derived fields of a notification log entry, fields passed as None are left as is'''
    fields: dict[str, typing.Any] = {'updated_unix_ts_ms': unix_ts_ms}
    if processing_status is not None:
        fields['processing_status'] = processing_status.value
    if notification_uuid is not None:
        fields['notification_uuid'] = notification_uuid
    if notification_type is not None:
        fields['notification_type'] = notification_type
    if subtype is not None:
        fields['subtype'] = subtype
    if original_tx_id is not None:
        fields['original_tx_id'] = original_tx_id
    if tx_info is not None:
        fields['tx_info'] = json.dumps(tx_info)
    if subscription_id is not None:
        fields['subscription_id'] = subscription_id
    result = update_row_tx(tx, 'apple_notifications', notification_id, fields)
    return result

def get_apple_notification_tx(tx: base.SQLTransaction, notification_id: int) -> AppleNotificationRow | None:
    rows   = find_rows_tx(tx, 'apple_notifications', [SQLFilter('id', SQLFilterOp.Eq, notification_id)])
    result = apple_notification_row_from_tuple(rows[0]) if len(rows) else None
    return result

def get_apple_notifications_by_uuid_tx(tx: base.SQLTransaction, notification_uuid: str) -> list[AppleNotificationRow]:
    rows   = find_rows_tx(tx, 'apple_notifications', [SQLFilter('notification_uuid', SQLFilterOp.Eq, notification_uuid)])
    result = [apple_notification_row_from_tuple(it) for it in rows]
    return result

def apple_notification_uuid_is_processed_tx(tx: base.SQLTransaction, notification_uuid: str, exclude_id: int) -> bool:
    rows   = find_rows_tx(tx,
                          'apple_notifications',
                          [SQLFilter('notification_uuid', SQLFilterOp.Eq, notification_uuid),
                           SQLFilter('processing_status', SQLFilterOp.Eq, base.NotificationProcessingStatus.Processed.value),
                           SQLFilter('id',                SQLFilterOp.Ne, exclude_id)],
                          limit=1)
    result = len(rows) > 0
    return result

def add_apple_receipt_tx(tx: base.SQLTransaction, transaction_id: str, user_id: int, raw_receipt: str, unix_ts_ms: int) -> AppleReceiptRow:
    '''Insert a receipt pending upstream verification, or return the existing row for the transaction'''
    existing = get_apple_receipt_by_transaction_id_tx(tx, transaction_id)
    if existing:
        return existing

    result                    = AppleReceiptRow()
    result.transaction_id     = transaction_id
    result.user_id            = user_id
    result.raw_receipt        = raw_receipt
    result.created_unix_ts_ms = unix_ts_ms
    result.updated_unix_ts_ms = unix_ts_ms
    result.id                 = create_row_tx(tx, 'apple_receipts', {'transaction_id':        result.transaction_id,
                                                                     'user_id':               result.user_id,
                                                                     'raw_receipt':           result.raw_receipt,
                                                                     'status':                result.status.value,
                                                                     'verification_attempts': result.verification_attempts,
                                                                     'created_unix_ts_ms':    result.created_unix_ts_ms,
                                                                     'updated_unix_ts_ms':    result.updated_unix_ts_ms})
    return result

def get_apple_receipt_by_transaction_id_tx(tx: base.SQLTransaction, transaction_id: str) -> AppleReceiptRow | None:
    rows   = find_rows_tx(tx, 'apple_receipts', [SQLFilter('transaction_id', SQLFilterOp.Eq, transaction_id)])
    result = apple_receipt_row_from_tuple(typing.cast(SQLTableAppleReceiptRowTuple, rows[0])) if len(rows) else None
    return result

def get_pending_apple_receipts_tx(tx: base.SQLTransaction, max_attempts: int, limit: int) -> list[AppleReceiptRow]:
    assert tx.cursor is not None
    _      = tx.cursor.execute(f'''
        SELECT   id, {string_from_sql_fields(SQL_TABLE_APPLE_RECEIPTS_FIELD, schema=False)}
        FROM     apple_receipts
        WHERE    status = ? AND verification_attempts < ?
        ORDER BY created_unix_ts_ms ASC, id ASC
        LIMIT    ?
    ''', (base.ReceiptStatus.PendingVerification.value, max_attempts, limit))
    rows   = typing.cast(list[SQLTableAppleReceiptRowTuple], tx.cursor.fetchall())
    result = [apple_receipt_row_from_tuple(it) for it in rows]
    return result

def increment_apple_receipt_attempt_tx(tx: base.SQLTransaction, receipt_id: int, unix_ts_ms: int) -> int:
    '''Atomically bump the attempt counter of a receipt, returns the new count'''
    assert tx.cursor is not None
    _      = tx.cursor.execute('''
        UPDATE apple_receipts
        SET    verification_attempts   = verification_attempts + 1,
               last_attempt_unix_ts_ms = ?,
               updated_unix_ts_ms      = ?
        WHERE  id = ?
        RETURNING verification_attempts
    ''', (unix_ts_ms, unix_ts_ms, receipt_id))
    row    = typing.cast(tuple[int] | None, tx.cursor.fetchone())
    assert row is not None, f'Receipt {receipt_id} does not exist'
    result = row[0]
    return result

def set_apple_receipt_status_tx(tx: base.SQLTransaction, receipt_id: int, status: base.ReceiptStatus, unix_ts_ms: int) -> bool:
    result = update_row_tx(tx, 'apple_receipts', receipt_id, {'status': status.value, 'updated_unix_ts_ms': unix_ts_ms})
    return result

def add_audit_log_tx(tx:              base.SQLTransaction,
                     event:           str,
                     status:          base.AuditStatus,
                     message:         str,
                     unix_ts_ms:      int,
                     details:         base.JSONObject | None = None,
                     user_id:         int | None             = None,
                     notification_id: int | None             = None) -> int:
    result = create_row_tx(tx, 'audit_log', {'event':              event,
                                             'status':             status.value,
                                             'message':            message,
                                             'details':            json.dumps(details) if details else None,
                                             'user_id':            user_id,
                                             'notification_id':    notification_id,
                                             'created_unix_ts_ms': unix_ts_ms})

    msg = f'Audit [{status}] {event} (user={user_id}, notification={notification_id}): {message}'
    match status:
        case base.AuditStatus.Failure:
            log.error(msg)
        case base.AuditStatus.Warning:
            log.warning(msg)
        case base.AuditStatus.Success | base.AuditStatus.Info:
            log.info(msg)
    return result

def add_audit_log(sql_conn:        sqlite3.Connection,
                  event:           str,
                  status:          base.AuditStatus,
                  message:         str,
                  unix_ts_ms:      int,
                  details:         base.JSONObject | None = None,
                  user_id:         int | None             = None,
                  notification_id: int | None             = None) -> int | None:
    '''
    Write an audit record in its own transaction. Used on failure paths after the caller's
    transaction was rolled back. A failure to write the audit record is logged and does not mask
    the failure being audited.
    '''
    result: int | None = None
    try:
        with base.SQLTransaction(sql_conn) as tx:
            result = add_audit_log_tx(tx              = tx,
                                      event           = event,
                                      status          = status,
                                      message         = message,
                                      unix_ts_ms      = unix_ts_ms,
                                      details         = details,
                                      user_id         = user_id,
                                      notification_id = notification_id)
    except sqlite3.Error:
        log.error(f'Failed to write audit record {event} (user={user_id}, notification={notification_id}): {traceback.format_exc()}')
    return result

def get_audit_logs_tx(tx: base.SQLTransaction, event: str | None = None, notification_id: int | None = None) -> list[AuditLogRow]:
    filters: list[SQLFilter] = []
    if event is not None:
        filters.append(SQLFilter('event', SQLFilterOp.Eq, event))
    if notification_id is not None:
        filters.append(SQLFilter('notification_id', SQLFilterOp.Eq, notification_id))
    rows   = find_rows_tx(tx, 'audit_log', filters)
    result = [audit_log_row_from_tuple(it) for it in rows]
    return result

def get_runtime_tx(tx: base.SQLTransaction) -> RuntimeRow:
    assert tx.cursor is not None
    _                                = tx.cursor.execute('SELECT last_reconcile_unix_ts_ms FROM runtime')
    row                              = typing.cast(tuple[int], tx.cursor.fetchone())
    result: RuntimeRow               = RuntimeRow()
    result.last_reconcile_unix_ts_ms = row[0]
    return result

def get_runtime(sql_conn: sqlite3.Connection) -> RuntimeRow:
    result: RuntimeRow = RuntimeRow()
    with base.SQLTransaction(sql_conn) as tx:
        result = get_runtime_tx(tx)
    return result

def claim_reconcile_slot(sql_conn: sqlite3.Connection, unix_ts_ms: int) -> ClaimReconcileResult:
    result = ClaimReconcileResult()
    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Exclusive) as tx:
        assert tx.cursor is not None
        runtime                             = get_runtime_tx(tx)
        result.last_reconcile_unix_ts_ms    = runtime.last_reconcile_unix_ts_ms
        result.already_done_by_someone_else = runtime.last_reconcile_unix_ts_ms >= unix_ts_ms
        if not result.already_done_by_someone_else:
            _ = tx.cursor.execute('UPDATE runtime SET last_reconcile_unix_ts_ms = ?', (unix_ts_ms,))
        log.info(f'Claim reconcile slot (pid={os.getpid()}, ts={base.readable_unix_ts_ms(unix_ts_ms)}, last_reconcile={result.last_reconcile_unix_ts_ms}, already_done_by_someone_else={result.already_done_by_someone_else})')
    return result

def db_info_string(sql_conn: sqlite3.Connection, db_path: str, err: base.ErrorSink) -> str:
    counts: dict[str, int] = {}
    active_subscriptions   = 0
    pending_receipts       = 0
    db_size                = 0
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        try:
            for table in SQL_TABLES:
                _             = tx.cursor.execute(f'SELECT COUNT(*) FROM {table}')
                counts[table] = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _                    = tx.cursor.execute('SELECT COUNT(*) FROM subscriptions WHERE status = ?', (base.SubscriptionStatus.Active.value,))
            active_subscriptions = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _                    = tx.cursor.execute('SELECT COUNT(*) FROM apple_receipts WHERE status = ?', (base.ReceiptStatus.PendingVerification.value,))
            pending_receipts     = typing.cast(tuple[int], tx.cursor.fetchone())[0]
        except sqlite3.Error as e:
            err.msg_list.append(f"Failed to retrieve DB metadata: {e}")

    result = ''
    if len(err.msg_list) == 0:
        if os.path.exists(db_path):
            db_size = os.stat(db_path).st_size
        runtime: RuntimeRow = get_runtime(sql_conn)
        result = (
            '  DB:                           {} ({} bytes)\n'.format(db_path, db_size) +
            '  Plans/Features/Entitlements:  {}/{}/{}\n'.format(counts['plans'], counts['features'], counts['entitlements']) +
            '  Subscriptions (Active):       {} ({})\n'.format(counts['subscriptions'], active_subscriptions) +
            '  Receipts (Pending):           {} ({})\n'.format(counts['apple_receipts'], pending_receipts) +
            '  Apple Notifs./Audit Records:  {}/{}\n'.format(counts['apple_notifications'], counts['audit_log']) +
            '  Last Reconcile:               {}'.format(base.readable_unix_ts_ms(runtime.last_reconcile_unix_ts_ms))
        )

    return result

def setup_db(path: str, uri: bool, err: base.ErrorSink) -> SetupDBResult:
    result: SetupDBResult = SetupDBResult()
    result.path           = path
    try:
        result.sql_conn = sqlite3.connect(path, uri=uri)
    except sqlite3.Error as e:
        err.msg_list.append(f'Failed to open/connect to DB at {path}: {e}')
        return result

    with base.SQLTransaction(result.sql_conn) as tx:
        sql_stmt: str = f'''
            CREATE TABLE IF NOT EXISTS plans (
                id INTEGER PRIMARY KEY NOT NULL,
                {string_from_sql_fields(fields=SQL_TABLE_PLANS_FIELD, schema=True)}
            );

            CREATE TABLE IF NOT EXISTS features (
                id INTEGER PRIMARY KEY NOT NULL,
                {string_from_sql_fields(fields=SQL_TABLE_FEATURES_FIELD, schema=True)}
            );

            CREATE TABLE IF NOT EXISTS plan_features (
                id INTEGER PRIMARY KEY NOT NULL,
                {string_from_sql_fields(fields=SQL_TABLE_PLAN_FEATURES_FIELD, schema=True)},
                UNIQUE(plan_id, feature_id)
            );

            CREATE TABLE IF NOT EXISTS entitlements (
                id INTEGER PRIMARY KEY NOT NULL,
                {string_from_sql_fields(fields=SQL_TABLE_ENTITLEMENTS_FIELD, schema=True)}
            );

            CREATE TABLE IF NOT EXISTS plan_entitlement_links (
                id INTEGER PRIMARY KEY NOT NULL,
                {string_from_sql_fields(fields=SQL_TABLE_PLAN_ENTITLEMENT_LINKS_FIELD, schema=True)},
                UNIQUE(plan_id, entitlement_id)
            );

            -- Subscriptions are never deleted, rows in a terminal state (expired, revoked,
            -- canceled) are retained for auditing.
            CREATE TABLE IF NOT EXISTS subscriptions (
                id INTEGER PRIMARY KEY NOT NULL,
                {string_from_sql_fields(fields=SQL_TABLE_SUBSCRIPTIONS_FIELD, schema=True)}
            );

            -- A user can have at most one active subscription at any instant. Callers cancel the
            -- superseded row before activating a new one within the same transaction.
            CREATE UNIQUE INDEX IF NOT EXISTS subscriptions_one_active_per_user
            ON subscriptions (user_id) WHERE status = 'active';

            CREATE INDEX IF NOT EXISTS subscriptions_original_tx_id
            ON subscriptions (original_tx_id);

            -- One row per physical delivery of an App Store server notification. The row is
            -- inserted before the payload is verified so that every delivery, including forged
            -- or corrupt ones, is accounted for. Apple retries failed deliveries so the same
            -- notification UUID can appear several times, at most once with a processed status.
            CREATE TABLE IF NOT EXISTS apple_notifications (
                id INTEGER PRIMARY KEY NOT NULL,
                {string_from_sql_fields(fields=SQL_TABLE_APPLE_NOTIFICATIONS_FIELD, schema=True)}
            );

            CREATE INDEX IF NOT EXISTS apple_notifications_uuid
            ON apple_notifications (notification_uuid);

            -- Receipts submitted by clients that activated a subscription on local signature
            -- verification alone, pending confirmation from the App Store Server API.
            CREATE TABLE IF NOT EXISTS apple_receipts (
                id INTEGER PRIMARY KEY NOT NULL,
                {string_from_sql_fields(fields=SQL_TABLE_APPLE_RECEIPTS_FIELD, schema=True)}
            );

            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY NOT NULL,
                {string_from_sql_fields(fields=SQL_TABLE_AUDIT_LOG_FIELD, schema=True)}
            );

            CREATE TABLE IF NOT EXISTS runtime (
                last_reconcile_unix_ts_ms INTEGER NOT NULL -- Last hourly slot the receipt reconciliation was claimed for
            );
        '''

        assert tx.cursor is not None

        try:
            # NOTE: Bootstrap tables
            _ = tx.cursor.executescript(sql_stmt)
            _ = tx.cursor.execute('''PRAGMA journal_mode=WAL''')

            # NOTE: Version migration
            target_db_version = 1
            if 1:
                db_version: int = tx.cursor.execute('PRAGMA user_version').fetchone()[0]  # pyright: ignore[reportAny]

                # NOTE: v0 is the nil state, it means the DB has never been bootstrapped. All the
                # tables will have been created with the latest schema so we teleport to the target
                # version
                if db_version == 0:
                    db_version = target_db_version
                    _          = tx.cursor.execute(f'PRAGMA user_version = {db_version}')

                # NOTE: Verify that the DB was migrated to the target version
                if db_version != target_db_version:
                    err.msg_list.append(f'DB at {path} is at version {db_version} which is newer than this backend supports ({target_db_version})')

            # NOTE: Initialise the runtime row with the default values
            if not err.has():
                _                  = tx.cursor.execute('SELECT EXISTS (SELECT 1 FROM runtime) as row_exists')
                runtime_row_exists = bool(typing.cast(tuple[int], tx.cursor.fetchone())[0])
                if not runtime_row_exists:
                    _ = tx.cursor.execute('INSERT INTO runtime (last_reconcile_unix_ts_ms) VALUES (0)')
                result.success = True
        except sqlite3.Error:
            err.msg_list.append(f"Failed to bootstrap DB tables: {traceback.format_exc()}")

    if result.success:
        result.runtime = get_runtime(result.sql_conn)
    else:
        result.sql_conn.close()

    return result

def verify_db(sql_conn: sqlite3.Connection, err: base.ErrorSink) -> bool:
    '''Check the invariants of the tables that SQLite itself cannot express'''
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        _ = tx.cursor.execute('''
            SELECT   user_id, COUNT(*)
            FROM     subscriptions
            WHERE    status = ?
            GROUP BY user_id
            HAVING   COUNT(*) > 1
        ''', (base.SubscriptionStatus.Active.value,))
        for row in typing.cast(list[tuple[int, int]], tx.cursor.fetchall()):
            err.msg_list.append(f'User {row[0]} has {row[1]} active subscriptions, at most 1 is permitted')

        _ = tx.cursor.execute('''
            SELECT id, plan_id
            FROM   subscriptions
            WHERE  plan_id IS NOT NULL AND plan_id NOT IN (SELECT id FROM plans)
        ''')
        for row in typing.cast(list[tuple[int, int]], tx.cursor.fetchall()):
            err.msg_list.append(f'Subscription {row[0]} references plan {row[1]} which does not exist')

        _ = tx.cursor.execute('''
            SELECT id, notification_uuid
            FROM   apple_notifications
            WHERE  processing_status = ?
            GROUP  BY notification_uuid
            HAVING COUNT(*) > 1
        ''', (base.NotificationProcessingStatus.Processed.value,))
        for row in typing.cast(list[tuple[int, str]], tx.cursor.fetchall()):
            err.msg_list.append(f'Notification {row[1]} was processed more than once')

    result = not err.has()
    return result
