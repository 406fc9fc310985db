'''
Client facing subscription lifecycle. These operations are invoked on behalf of a user (through the
routes in server.py) as opposed to the notification handlers in platform_apple.py which are invoked
on behalf of Apple. Both sides mutate the same subscription rows and uphold the same invariant, a
user has at most one active subscription at any time.

Activating a subscription from an App Store purchase lives with the rest of the Apple integration,
see `platform_apple.verify_purchase`.
'''

import logging
import sqlite3

import base
import backend
import plans

log = logging.Logger('SUBS')

# Duration granted by `subscribe_to_plan` for paid plans
SUBSCRIBE_TO_PLAN_DURATION_MS: int = base.MILLISECONDS_IN_DAY * 30

def subscription_to_dict(sub: backend.SubscriptionRow) -> base.JSONObject:
    result: base.JSONObject = {
        'id':                 sub.id,
        'user_id':            sub.user_id,
        'plan_id':            sub.plan_id,
        'status':             sub.status.value,
        'start_unix_ts_ms':   sub.start_unix_ts_ms,
        'expiry_unix_ts_ms':  sub.expiry_unix_ts_ms,
        'original_tx_id':     sub.original_tx_id,
        'latest_tx_id':       sub.latest_tx_id,
        'revoked_unix_ts_ms': sub.revoked_unix_ts_ms,
        'revocation_reason':  sub.revocation_reason,
    }
    return result

def subscribe_free_plan_tx(tx: base.SQLTransaction, user_id: int, free_plan_name: str, unix_ts_ms: int) -> backend.SubscriptionRow:
    free_plan = backend.get_plan_by_name_tx(tx, free_plan_name)
    if not free_plan:
        raise base.ConfigurationError(f'Free plan not found. Please ensure a \'{free_plan_name}\' plan exists.', user_id=user_id)

    canceled = backend.cancel_active_subscriptions_tx(tx, user_id, keep_id=None, unix_ts_ms=unix_ts_ms)
    result   = backend.add_subscription_tx(tx                = tx,
                                           user_id           = user_id,
                                           plan_id           = free_plan.id,
                                           status            = base.SubscriptionStatus.Active,
                                           expiry_unix_ts_ms = None,
                                           original_tx_id    = None,
                                           latest_tx_id      = None,
                                           unix_ts_ms        = unix_ts_ms)
    log.info(f'User {user_id} subscribed to the free plan (subscription {result.id}, {canceled} prior subscription(s) canceled)')
    return result

def subscribe_free_plan(sql_conn: sqlite3.Connection, user_id: int, free_plan_name: str, unix_ts_ms: int) -> backend.SubscriptionRow:
    '''Replace whatever the user is subscribed to with a non-expiring subscription to the free plan'''
    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
        result = subscribe_free_plan_tx(tx, user_id, free_plan_name, unix_ts_ms)
    return result

def subscribe_to_plan(sql_conn: sqlite3.Connection, user_id: int, plan_id: int, free_plan_name: str, unix_ts_ms: int) -> backend.SubscriptionRow:
    '''
    Subscribe the user to the plan for a 30 day period (no expiry for the free plan) outside of any
    store purchase, intended for internal use. Subscribing again to the plan the user is already on
    restarts the period on the existing subscription instead of creating a new one.
    '''
    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
        plan = backend.get_plan_by_id_tx(tx, plan_id)
        if not plan:
            raise base.ValidationError(f'The specified plan ({plan_id}) does not exist.', user_id=user_id)

        is_free_plan       = plan.name == free_plan_name or plan.role == base.PlanRole.Free
        expiry: int | None = None if is_free_plan else unix_ts_ms + SUBSCRIBE_TO_PLAN_DURATION_MS

        existing = backend.get_active_subscription_for_user_tx(tx, user_id)
        if existing and existing.plan_id == plan.id:
            existing.expiry_unix_ts_ms = expiry
            _                          = backend.update_subscription_tx(tx, existing, unix_ts_ms)
            log.info(f'User {user_id} re-subscribed to plan {plan.id}, subscription {existing.id} now expires {base.readable_unix_ts_ms(expiry)}')
            return existing

        _      = backend.cancel_active_subscriptions_tx(tx, user_id, keep_id=None, unix_ts_ms=unix_ts_ms)
        result = backend.add_subscription_tx(tx                = tx,
                                             user_id           = user_id,
                                             plan_id           = plan.id,
                                             status            = base.SubscriptionStatus.Active,
                                             expiry_unix_ts_ms = expiry,
                                             original_tx_id    = None,
                                             latest_tx_id      = None,
                                             unix_ts_ms        = unix_ts_ms)
    return result

def get_active_subscription_tx(tx: base.SQLTransaction, user_id: int, unix_ts_ms: int) -> base.JSONObject | None:
    sub    = backend.get_active_subscription_for_user_tx(tx, user_id)
    result = None
    if sub:
        result         = subscription_to_dict(sub)
        result['plan'] = plans.get_plan_detail_tx(tx, sub.plan_id, unix_ts_ms) if sub.plan_id is not None else None
    return result

def get_active_subscription(sql_conn: sqlite3.Connection, user_id: int, unix_ts_ms: int) -> base.JSONObject | None:
    '''The user's active subscription with its fully resolved plan, None if the user has none'''
    with base.SQLTransaction(sql_conn) as tx:
        result = get_active_subscription_tx(tx, user_id, unix_ts_ms)
    return result
