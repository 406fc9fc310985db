'''
App Store Server Notifications V2 integration. Inbound notifications are persisted, verified,
de-duplicated and then dispatched to a handler per notification type that reconciles the local
subscription state against what Apple reports.

The notification pipeline is designed to be safe under Apple's retry policy. For version 2
notifications Apple retries five times, at 1, 12, 24, 48, and 72 hours after the previous attempt
for every delivery we did not acknowledge with a HTTP 200. Every handler is therefore idempotent and
a delivery that failed midway leaves no partially applied state behind.

  https://developer.apple.com/documentation/appstoreservernotifications/responding-to-app-store-server-notifications
'''

import flask
import typing
import enum
import uuid
import sqlite3
import logging
import traceback
import dataclasses
import pprint

from appstoreserverlibrary.models.Environment                  import Environment                  as AppleEnvironment
from appstoreserverlibrary.models.JWSTransactionDecodedPayload import JWSTransactionDecodedPayload as AppleJWSTransactionDecodedPayload
from appstoreserverlibrary.models.JWSRenewalInfoDecodedPayload import JWSRenewalInfoDecodedPayload as AppleJWSRenewalInfoDecodedPayload
from appstoreserverlibrary.models.ResponseBodyV2DecodedPayload import ResponseBodyV2DecodedPayload as AppleResponseBodyV2DecodedPayload
from appstoreserverlibrary.models.Subtype                      import Subtype                      as AppleSubtype
from appstoreserverlibrary.models.NotificationTypeV2           import NotificationTypeV2           as AppleNotificationV2
from appstoreserverlibrary.models.RevocationReason             import RevocationReason             as AppleRevocationReason

from appstoreserverlibrary.api_client import (
    AppStoreServerAPIClient as AppleAppStoreServerAPIClient,
)

from appstoreserverlibrary.signed_data_verifier import (
    VerificationException as AppleVerificationException,
    SignedDataVerifier    as AppleSignedDataVerifier,
)

import base
import backend
import server
import subscriptions

log = logging.Logger('APPLE')

@dataclasses.dataclass
class Core:
    app_store_server_api_client: AppleAppStoreServerAPIClient
    signed_data_verifier:        AppleSignedDataVerifier

    # Name of the plan users fall back to when their paid subscription expires
    free_plan_name:              str = 'Free Plan'

@dataclasses.dataclass
class IngestResult:
    notification_id:   int                               = 0
    status:            base.NotificationProcessingStatus = base.NotificationProcessingStatus.Received
    notification_type: str                               = ''
    subscription_id:   int | None                        = None
    err_msg:           str                               = ''

    @property
    def success(self) -> bool:
        result = self.status == base.NotificationProcessingStatus.Processed or self.status == base.NotificationProcessingStatus.Duplicate
        return result

@dataclasses.dataclass
class HandlerContext:
    '''
    State passed to a notification handler. Handlers perform all their writes through `tx` which is
    rolled back by the pipeline if the handler raises.
    '''
    tx:              base.SQLTransaction
    core:            Core
    body:            AppleResponseBodyV2DecodedPayload
    tx_info:         AppleJWSTransactionDecodedPayload | None
    subscription:    backend.SubscriptionRow | None
    notification_id: int
    details:         base.JSONObject
    unix_ts_ms:      int

    # The subscription the handler created or modified, linked to the notification log entry
    subscription_id: int | None = None

@dataclasses.dataclass
class VerifyPurchaseResult:
    subscription: backend.SubscriptionRow = dataclasses.field(default_factory=backend.SubscriptionRow)
    receipt:      backend.AppleReceiptRow = dataclasses.field(default_factory=backend.AppleReceiptRow)

FLASK_ROUTE_NOTIFICATIONS_APPLE_V2:   str = '/apple_notifications_v2'
FLASK_ROUTE_VERIFY_PURCHASE:          str = '/subscriptions/verify-apple-purchase'
FLASK_CONFIG_PLATFORM_APPLE_CORE_KEY: str = 'sub_backend_platform_apple_core'

# Largest user ID that fits in a SQLite INTEGER column
MAX_USER_ID:                          int = 2**63 - 1

OFFER_TYPE_LABELS: dict[int, str] = {
  1: 'Introductory',
  2: 'Promotional',
  3: 'Offer Code',
  4: 'Win-back',
}

# The object containing routes that you register onto a Flask app to turn it
# into an app that accepts Apple iOS App Store subscription notifications
flask_blueprint = flask.Blueprint('sub-backend-apple', __name__)

def print_obj(obj: typing.Any) -> str:
    # NOTE: For some reason pprint is unable to pretty print Apple classes. We do it manually ourselves
    attrs  = {attr: getattr(obj, attr) for attr in dir(obj) if not attr.startswith('_') and not callable(getattr(obj, attr))}
    result = f'{pprint.pformat(attrs)}'
    return result

def enum_or_raw_str(value: enum.Enum | None, raw: typing.Any) -> str | None:
    '''Apple models keep unrecognised enum values in a `raw*` sibling field, prefer the parsed value'''
    result: str | None = None
    if value is not None:
        result = str(value.value)
    elif raw is not None:
        result = str(raw)
    return result

def user_id_from_app_account_token(token: str | None) -> int | None:
    '''
    The client tags purchases with an `appAccountToken` that identifies the user that made the
    purchase. Apple requires the token to be a UUID so clients encode the user ID as the UUID's
    integer value (see `app_account_token_from_user_id`). Older clients sent the user ID as a
    string of digits, both forms are accepted. Tokens that don't encode a user ID (e.g. a random
    UUID generated by the client) return None.
    '''
    result: int | None = None
    if token:
        if token.isdigit():
            result = int(token)
        else:
            try:
                result = uuid.UUID(token).int
            except ValueError:
                log.warning(f'App account token was neither a user ID nor a UUID: {token if base.UNSAFE_LOGGING else base.obfuscate(token)}')
        if result is not None and (result <= 0 or result > MAX_USER_ID):
            result = None
    return result

def app_account_token_from_user_id(user_id: int) -> str:
    result = str(uuid.UUID(int=user_id))
    return result

def verify_notification(core: Core, signed_payload: str) -> AppleResponseBodyV2DecodedPayload:
    try:
        result = core.signed_data_verifier.verify_and_decode_notification(signed_payload)
    except AppleVerificationException as e:
        raise base.VerificationError(f'Notification failed verification ({e.status})') from e
    return result

def verify_signed_transaction(core: Core, signed_tx: str) -> AppleJWSTransactionDecodedPayload:
    try:
        result = core.signed_data_verifier.verify_and_decode_signed_transaction(signed_tx)
    except AppleVerificationException as e:
        raise base.VerificationError(f'Signed transaction failed verification ({e.status})') from e
    return result

def verify_renewal_info(core: Core, signed_renewal_info: str) -> AppleJWSRenewalInfoDecodedPayload:
    try:
        result = core.signed_data_verifier.verify_and_decode_renewal_info(signed_renewal_info)
    except AppleVerificationException as e:
        raise base.VerificationError(f'Signed renewal info failed verification ({e.status})') from e
    return result

def tx_info_to_json(tx: AppleJWSTransactionDecodedPayload) -> base.JSONObject:
    result: base.JSONObject = {
        'transactionId':         tx.transactionId,
        'originalTransactionId': tx.originalTransactionId,
        'productId':             tx.productId,
        'purchaseDate':          tx.purchaseDate,
        'expiresDate':           tx.expiresDate,
        'type':                  enum_or_raw_str(tx.type, tx.rawType),
        'environment':           enum_or_raw_str(tx.environment, tx.rawEnvironment),
        'revocationDate':        tx.revocationDate,
        'revocationReason':      enum_or_raw_str(tx.revocationReason, tx.rawRevocationReason),
        'offerType':             enum_or_raw_str(tx.offerType, tx.rawOfferType),
        'offerIdentifier':       tx.offerIdentifier,
    }
    # NOTE: The account token identifies the user, keep it out of the DB unless explicitly allowed
    if base.UNSAFE_LOGGING:
        result['appAccountToken'] = tx.appAccountToken
    return result

def plan_for_product_id_tx(tx: base.SQLTransaction, product_id: str) -> backend.PlanRow | None:
    '''Find the plan sold under `product_id`, either its regular or its sale product'''
    result = backend.get_plan_by_product_id_tx(tx, product_id)
    if not result:
        result = backend.get_plan_by_sale_product_id_tx(tx, product_id)
    return result

def _plan_sells_product(plan: backend.PlanRow | None, product_id: str) -> bool:
    result = plan is not None and (plan.product_id == product_id or plan.sale_product_id == product_id)
    return result

def _require_subscription(ctx: HandlerContext, audit_event: str) -> backend.SubscriptionRow:
    if not ctx.subscription:
        raise base.DataInconsistencyError(f'Received a \'{ctx.details["type"]}\' notification, but the corresponding subscription (orig. tx {ctx.details["original_tx_id"]}) does not exist',
                                          audit_event=audit_event)
    return ctx.subscription

def _require_tx_info(ctx: HandlerContext, audit_event: str, user_id: int | None) -> AppleJWSTransactionDecodedPayload:
    if not ctx.tx_info:
        raise base.DataInconsistencyError(f'Received a \'{ctx.details["type"]}\' notification without signed transaction info',
                                          audit_event=audit_event,
                                          user_id=user_id)
    return ctx.tx_info

def _require_plan_for_product(ctx: HandlerContext, product_id: str | None, audit_event: str, user_id: int | None) -> backend.PlanRow:
    plan = plan_for_product_id_tx(ctx.tx, product_id) if product_id else None
    if not plan:
        raise base.ConfigurationError(f'Cannot process \'{ctx.details["type"]}\' notification: The plan with product ID \'{product_id}\' was not found',
                                      audit_event=audit_event,
                                      user_id=user_id)
    return plan

def _audit(ctx: HandlerContext, event: str, status: base.AuditStatus, message: str, user_id: int | None, details: base.JSONObject | None = None):
    _ = backend.add_audit_log_tx(tx              = ctx.tx,
                                 event           = event,
                                 status          = status,
                                 message         = message,
                                 unix_ts_ms      = ctx.unix_ts_ms,
                                 details         = details if details is not None else ctx.details,
                                 user_id         = user_id,
                                 notification_id = ctx.notification_id)

def _activate_subscription_tx(ctx: HandlerContext, sub: backend.SubscriptionRow):
    # NOTE: Cancel any other active subscription first, the DB permits one active row per user
    _          = backend.cancel_active_subscriptions_tx(ctx.tx, sub.user_id, keep_id=sub.id, unix_ts_ms=ctx.unix_ts_ms)
    sub.status = base.SubscriptionStatus.Active
    _          = backend.update_subscription_tx(ctx.tx, sub, ctx.unix_ts_ms)

def _handle_subscribed(ctx: HandlerContext):
    # The customer subscribed for the first time (subtype INITIAL_BUY) or resubscribed to a
    # subscription in the same group after it lapsed (subtype RESUBSCRIBE). The client normally
    # already activated the subscription through the verify purchase route, in which case this
    # confirms it. Otherwise the notification beat the client and we create the subscription from
    # the notification, linking it to the user through the purchase's app account token.
    tx_info = _require_tx_info(ctx, 'SUBSCRIBED_FAILURE_UNLINKABLE', ctx.subscription.user_id if ctx.subscription else None)
    product = tx_info.productId

    if ctx.subscription:
        sub          = ctx.subscription
        current_plan = backend.get_plan_by_id_tx(ctx.tx, sub.plan_id) if sub.plan_id is not None else None
        plan_changed = not product or not _plan_sells_product(current_plan, product)
        if plan_changed:
            log.info(f'SUBSCRIBED for subscription {sub.id} involves a plan change or initial assignment to \'{product}\'')
            sub.plan_id = _require_plan_for_product(ctx, product, 'SUBSCRIBED_FAILURE_PLAN_MISSING', sub.user_id).id

        sub.expiry_unix_ts_ms = tx_info.expiresDate
        sub.latest_tx_id      = tx_info.transactionId or sub.latest_tx_id
        _activate_subscription_tx(ctx, sub)
        ctx.subscription_id   = sub.id

        plan_label = f' and set to plan \'{product}\'' if plan_changed else ''
        _audit(ctx,
               'SUBSCRIPTION_CONFIRMED',
               base.AuditStatus.Success,
               f'Subscription {sub.id} confirmed as active{plan_label}. New expiration: {base.readable_unix_ts_ms(sub.expiry_unix_ts_ms)}',
               sub.user_id)
        return

    user_id = user_id_from_app_account_token(tx_info.appAccountToken)
    if user_id is None:
        raise base.DataInconsistencyError('Cannot process SUBSCRIBED event: No usable appAccountToken was provided, and no existing subscription was found',
                                          audit_event='SUBSCRIBED_FAILURE_UNLINKABLE')

    log.warning(f'No existing subscription found for orig. tx {tx_info.originalTransactionId}. Creating a new one for user {user_id} via webhook fallback')
    plan = _require_plan_for_product(ctx, product, 'SUBSCRIBED_FAILURE_PLAN_MISSING', user_id)
    _    = backend.cancel_active_subscriptions_tx(ctx.tx, user_id, keep_id=None, unix_ts_ms=ctx.unix_ts_ms)
    sub  = backend.add_subscription_tx(tx                = ctx.tx,
                                       user_id           = user_id,
                                       plan_id           = plan.id,
                                       status            = base.SubscriptionStatus.Active,
                                       expiry_unix_ts_ms = tx_info.expiresDate,
                                       original_tx_id    = tx_info.originalTransactionId,
                                       latest_tx_id      = tx_info.transactionId,
                                       unix_ts_ms        = ctx.unix_ts_ms)
    ctx.subscription_id = sub.id
    _audit(ctx, 'SUBSCRIPTION_CREATED_BY_FALLBACK', base.AuditStatus.Success, f'New subscription created for plan \'{product}\' via webhook fallback', user_id)

def _handle_did_renew(ctx: HandlerContext):
    # The subscription auto-renewed for a new period, or recovered from a billing retry (subtype
    # BILLING_RECOVERY)
    sub     = _require_subscription(ctx, 'RENEWAL_FAILURE_SUBSCRIPTION_MISSING')
    tx_info = _require_tx_info(ctx, 'RENEWAL_FAILURE_SUBSCRIPTION_MISSING', sub.user_id)
    product = tx_info.productId

    current_plan = backend.get_plan_by_id_tx(ctx.tx, sub.plan_id) if sub.plan_id is not None else None
    if not product or not _plan_sells_product(current_plan, product):
        sub.plan_id = _require_plan_for_product(ctx, product, 'RENEWAL_FAILURE_PLAN_MISSING', sub.user_id).id

    sub.expiry_unix_ts_ms = tx_info.expiresDate
    sub.latest_tx_id      = tx_info.transactionId or sub.latest_tx_id
    _activate_subscription_tx(ctx, sub)
    ctx.subscription_id   = sub.id

    log.info(f'DID_RENEW for user {sub.user_id}, new expiry {base.readable_unix_ts_ms(sub.expiry_unix_ts_ms)}')
    _audit(ctx, 'USER_SUBSCRIPTION_RENEWED', base.AuditStatus.Success, f'Subscription for plan \'{product}\' successfully auto-renewed', sub.user_id)

def _handle_did_change_renewal_pref(ctx: HandlerContext):
    # The customer upgraded (subtype UPGRADE) or downgraded (subtype DOWNGRADE) within the
    # subscription group, or reverted a pending downgrade (no subtype). The product the
    # subscription renews into is carried in the renewal info.
    sub     = _require_subscription(ctx, 'PLAN_CHANGE_FAILURE_SUB_MISSING')
    product = ctx.tx_info.productId if ctx.tx_info else None

    signed_renewal_info = ctx.body.data.signedRenewalInfo if ctx.body.data else None
    if signed_renewal_info:
        renewal_info = verify_renewal_info(ctx.core, signed_renewal_info)
        if renewal_info.autoRenewProductId:
            product = renewal_info.autoRenewProductId

    new_plan = _require_plan_for_product(ctx, product, 'PLAN_CHANGE_FAILURE_PLAN_MISSING', sub.user_id)
    old_plan = backend.get_plan_by_id_tx(ctx.tx, sub.plan_id) if sub.plan_id is not None else None
    if new_plan.id != sub.plan_id:
        sub.plan_id = new_plan.id
        _           = backend.update_subscription_tx(ctx.tx, sub, ctx.unix_ts_ms)
    ctx.subscription_id = sub.id

    message = f'User changed their subscription plan from \'{old_plan.name if old_plan else None}\' to \'{new_plan.name}\''
    log.info(f'{message} (subscription {sub.id})')
    _audit(ctx, 'PLAN_CHANGED', base.AuditStatus.Info, message, sub.user_id)

def _handle_did_change_renewal_status(ctx: HandlerContext):
    sub                 = _require_subscription(ctx, 'RENEWAL_STATUS_CHANGE_FAILURE_SUB_MISSING')
    subtype             = ctx.body.subtype
    ctx.subscription_id = sub.id

    event   = ''
    message = ''
    match subtype:
        case AppleSubtype.AUTO_RENEW_DISABLED:
            # NOTE: Access continues until the end of the period, EXPIRED follows at that point
            sub.status = base.SubscriptionStatus.Canceled
            _          = backend.update_subscription_tx(ctx.tx, sub, ctx.unix_ts_ms)
            event      = 'USER_DISABLED_AUTORENEW'
            message    = 'User turned off auto-renew. Subscription will expire at the end of the current period.'

        case AppleSubtype.AUTO_RENEW_ENABLED:
            # NOTE: Terminal states (expired, revoked) are not resurrected by re-enabling renewal
            if sub.status in (base.SubscriptionStatus.Canceled, base.SubscriptionStatus.BillingIssue, base.SubscriptionStatus.GracePeriod):
                _activate_subscription_tx(ctx, sub)
            event   = 'USER_ENABLED_AUTORENEW'
            message = 'User re-enabled auto-renew.'

        case _:
            log.warning(f'Received DID_CHANGE_RENEWAL_STATUS with unhandled subtype: {enum_or_raw_str(subtype, ctx.body.rawSubtype)}')
            return

    log.info(f'{message} (user {sub.user_id}, subscription {sub.id})')
    _audit(ctx, event, base.AuditStatus.Info, message, sub.user_id)

def _handle_did_fail_to_renew(ctx: HandlerContext):
    sub     = _require_subscription(ctx, 'RENEWAL_FAILURE_SUB_MISSING')
    product = ctx.tx_info.productId if ctx.tx_info else None
    if ctx.body.subtype == AppleSubtype.GRACE_PERIOD:
        sub.status = base.SubscriptionStatus.GracePeriod
        message    = f'Subscription for plan \'{product}\' failed to renew and has entered a grace period.'
    else:
        sub.status = base.SubscriptionStatus.BillingIssue
        message    = f'Subscription for plan \'{product}\' failed to renew due to a billing error.'

    _                   = backend.update_subscription_tx(ctx.tx, sub, ctx.unix_ts_ms)
    ctx.subscription_id = sub.id
    _audit(ctx, 'USER_SUBSCRIPTION_RENEWAL_FAILED', base.AuditStatus.Warning, message, sub.user_id)

def _handle_expired(ctx: HandlerContext):
    if not ctx.subscription:
        # NOTE: The end state, no active subscription, is already correct. Nothing to retry.
        _audit(ctx,
               'EXPIRATION_WARNING_SUBSCRIPTION_MISSING',
               base.AuditStatus.Warning,
               'Received an \'EXPIRED\' notification, but the corresponding subscription does not exist',
               None)
        return

    sub                 = ctx.subscription
    reason              = enum_or_raw_str(ctx.body.subtype, ctx.body.rawSubtype) or 'UNKNOWN'
    product             = ctx.tx_info.productId if ctx.tx_info else None
    sub.status          = base.SubscriptionStatus.Expired
    _                   = backend.update_subscription_tx(ctx.tx, sub, ctx.unix_ts_ms)
    ctx.subscription_id = sub.id
    _audit(ctx, 'USER_SUBSCRIPTION_EXPIRED', base.AuditStatus.Info, f'Subscription for plan \'{product}\' expired. Reason: {reason}.', sub.user_id)

    # NOTE: Drop the user onto the free tier unless they already moved onto another subscription
    free_plan = backend.get_plan_by_name_tx(ctx.tx, ctx.core.free_plan_name)
    if not free_plan:
        log.warning(f'Subscription {sub.id} expired but no free plan named \'{ctx.core.free_plan_name}\' exists, user {sub.user_id} is left without a subscription')
        return

    if backend.get_active_subscription_for_user_tx(ctx.tx, sub.user_id):
        return

    free_sub = backend.add_subscription_tx(tx                = ctx.tx,
                                           user_id           = sub.user_id,
                                           plan_id           = free_plan.id,
                                           status            = base.SubscriptionStatus.Active,
                                           expiry_unix_ts_ms = None,
                                           original_tx_id    = sub.original_tx_id,
                                           latest_tx_id      = None,
                                           unix_ts_ms        = ctx.unix_ts_ms)
    _audit(ctx, 'FREE_PLAN_FALLBACK_CREATED', base.AuditStatus.Info, f'User moved to \'{free_plan.name}\' (subscription {free_sub.id}) after expiry', sub.user_id)

def _revocation_ts(ctx: HandlerContext) -> int:
    result = ctx.unix_ts_ms
    if ctx.tx_info and ctx.tx_info.revocationDate:
        result = ctx.tx_info.revocationDate
    return result

def _handle_refund(ctx: HandlerContext):
    sub = _require_subscription(ctx, 'REFUND_FAILURE_SUB_MISSING')

    # NOTE: Apple's reason is 1 when it refunded due to an actual or perceived issue with the app,
    # 0 for any other reason
    reason = ctx.tx_info.revocationReason if ctx.tx_info else None
    if reason == AppleRevocationReason.REFUNDED_DUE_TO_ISSUE:
        sub.revocation_reason = 'REFUND_DEV_ISSUE'
    else:
        sub.revocation_reason = 'REFUND_OTHER'

    log.warning(f'Processing REFUND for user {sub.user_id}, revoking access')
    sub.status             = base.SubscriptionStatus.Revoked
    sub.revoked_unix_ts_ms = _revocation_ts(ctx)
    _                      = backend.update_subscription_tx(ctx.tx, sub, ctx.unix_ts_ms)
    ctx.subscription_id    = sub.id
    _audit(ctx, 'USER_SUBSCRIPTION_REFUNDED', base.AuditStatus.Warning, 'Subscription was refunded and access has been revoked.', sub.user_id)

def _handle_revoke(ctx: HandlerContext):
    # Family Sharing access to the purchase was revoked, e.g. the purchaser stopped sharing
    sub    = _require_subscription(ctx, 'REVOKE_FAILURE_SUB_MISSING')
    reason = enum_or_raw_str(ctx.tx_info.revocationReason, ctx.tx_info.rawRevocationReason) if ctx.tx_info else None

    log.warning(f'Processing REVOKE for user {sub.user_id}, revoking access')
    sub.status             = base.SubscriptionStatus.Revoked
    sub.revoked_unix_ts_ms = _revocation_ts(ctx)
    sub.revocation_reason  = f'REVOKE_REASON_{reason or "UNKNOWN"}'
    _                      = backend.update_subscription_tx(ctx.tx, sub, ctx.unix_ts_ms)
    ctx.subscription_id    = sub.id
    _audit(ctx, 'USER_SUBSCRIPTION_REVOKED', base.AuditStatus.Warning, 'Subscription was revoked by Apple and access has been removed.', sub.user_id)

def _handle_offer_redeemed(ctx: HandlerContext):
    if not ctx.subscription:
        _audit(ctx,
               'OFFER_REDEEMED_SUB_MISSING',
               base.AuditStatus.Warning,
               'Received an \'OFFER_REDEEMED\' notification, but could not find a matching subscription. The event was still logged.',
               None)
        return

    offer_identifier: str | None = ctx.tx_info.offerIdentifier if ctx.tx_info else None
    offer_type_label: str        = 'Unknown'
    if ctx.tx_info and ctx.tx_info.offerType is not None:
        offer_type_label = OFFER_TYPE_LABELS.get(int(ctx.tx_info.offerType.value), 'Unknown')

    details                     = dict(ctx.details)
    details['offer_identifier'] = offer_identifier
    details['offer_type']       = offer_type_label
    ctx.subscription_id         = ctx.subscription.id
    _audit(ctx,
           'USER_REDEEMED_OFFER',
           base.AuditStatus.Info,
           f'User redeemed an offer (\'{offer_identifier or "N/A"}\', Type: {offer_type_label}).',
           ctx.subscription.user_id,
           details)

def _handle_price_increase(ctx: HandlerContext):
    if not ctx.subscription:
        _audit(ctx,
               'PRICE_INCREASE_WARNING_SUB_MISSING',
               base.AuditStatus.Warning,
               'Received a \'PRICE_INCREASE\' notification, but the corresponding subscription does not exist. The event was still logged.',
               None)
        return

    if ctx.body.subtype == AppleSubtype.ACCEPTED:
        message = 'User has accepted the upcoming price increase for their subscription.'
    else:
        message = 'User has been notified of an upcoming price increase and has not yet accepted.'
    ctx.subscription_id = ctx.subscription.id
    _audit(ctx, 'USER_NOTIFIED_OF_PRICE_INCREASE', base.AuditStatus.Info, message, ctx.subscription.user_id)

def _handle_test(ctx: HandlerContext):
    _audit(ctx,
           'TEST_NOTIFICATION_RECEIVED',
           base.AuditStatus.Info,
           'Successfully received a \'TEST\' notification from Apple. The endpoint is working correctly.',
           None)

def _handle_unsupported(ctx: HandlerContext):
    log.warning(f'Received Apple notification {ctx.details["type"]} that isn\'t handled')
    _audit(ctx,
           'UNHANDLED_NOTIFICATION_TYPE',
           base.AuditStatus.Warning,
           f'Notification type \'{ctx.details["type"]}\' is not handled',
           ctx.subscription.user_id if ctx.subscription else None)

def handle_notification(ctx: HandlerContext):
    # NOTE: Exhaustively handle all the notification types defined by Apple:
    #
    #   Notification Types
    #     https://developer.apple.com/documentation/appstoreservernotifications/notificationtype
    #   Notification Sub-types
    #     https://developer.apple.com/documentation/appstoreservernotifications/subtype
    match ctx.body.notificationType:
        case AppleNotificationV2.SUBSCRIBED:
            _handle_subscribed(ctx)
        case AppleNotificationV2.DID_RENEW:
            _handle_did_renew(ctx)
        case AppleNotificationV2.DID_CHANGE_RENEWAL_PREF:
            _handle_did_change_renewal_pref(ctx)
        case AppleNotificationV2.DID_CHANGE_RENEWAL_STATUS:
            _handle_did_change_renewal_status(ctx)
        case AppleNotificationV2.DID_FAIL_TO_RENEW:
            _handle_did_fail_to_renew(ctx)
        case AppleNotificationV2.EXPIRED:
            _handle_expired(ctx)
        case AppleNotificationV2.REFUND:
            _handle_refund(ctx)
        case AppleNotificationV2.REVOKE:
            _handle_revoke(ctx)
        case AppleNotificationV2.OFFER_REDEEMED:
            _handle_offer_redeemed(ctx)
        case AppleNotificationV2.PRICE_INCREASE:
            _handle_price_increase(ctx)
        case AppleNotificationV2.TEST:
            _handle_test(ctx)

        # NOTE: Scenarios we don't act on. Consumables, one-off purchases, third party stores and
        # developer issued renewal extensions are not sold through this backend.
        case AppleNotificationV2.CONSUMPTION_REQUEST     | \
             AppleNotificationV2.EXTERNAL_PURCHASE_TOKEN | \
             AppleNotificationV2.GRACE_PERIOD_EXPIRED    | \
             AppleNotificationV2.ONE_TIME_CHARGE         | \
             AppleNotificationV2.REFUND_DECLINED         | \
             AppleNotificationV2.REFUND_REVERSED         | \
             AppleNotificationV2.RENEWAL_EXTENDED        | \
             AppleNotificationV2.RENEWAL_EXTENSION:
            _handle_unsupported(ctx)

        # NOTE: Types introduced after this library release arrive as None with the raw string set
        case _:
            _handle_unsupported(ctx)

def _mark_failed(sql_conn: sqlite3.Connection, result: IngestResult, unix_ts_ms: int, audit_event: str, msg: str, user_id: int | None, details: base.JSONObject):
    # NOTE: The decoded fields written during processing were rolled back with the handler, store
    # them again so the failed delivery can still be looked up
    with base.SQLTransaction(sql_conn) as tx:
        _ = backend.update_apple_notification_tx(tx                = tx,
                                                 notification_id   = result.notification_id,
                                                 unix_ts_ms        = unix_ts_ms,
                                                 processing_status = base.NotificationProcessingStatus.Failed,
                                                 notification_uuid = typing.cast(str | None, details.get('uuid')),
                                                 notification_type = typing.cast(str | None, details.get('type')),
                                                 subtype           = typing.cast(str | None, details.get('subtype')),
                                                 original_tx_id    = typing.cast(str | None, details.get('original_tx_id')))

    _ = backend.add_audit_log(sql_conn        = sql_conn,
                              event           = audit_event,
                              status          = base.AuditStatus.Failure,
                              message         = msg,
                              unix_ts_ms      = unix_ts_ms,
                              details         = details,
                              user_id         = user_id,
                              notification_id = result.notification_id)
    result.status  = base.NotificationProcessingStatus.Failed
    result.err_msg = msg

def ingest_notification(core: Core, sql_conn: sqlite3.Connection, signed_payload: str, unix_ts_ms: int | None = None) -> IngestResult:
    '''
    Record, verify, de-duplicate and dispatch a signed App Store server notification. Failures are
    reported on the result (and recorded on the notification log entry and in the audit log), they
    are not raised.
    '''
    now    = unix_ts_ms if unix_ts_ms is not None else base.unix_ts_ms_now()
    result = IngestResult()

    # NOTE: Persist the raw delivery before anything else so that it's accounted for even if it
    # turns out to be forged or malformed
    result.notification_id = backend.add_apple_notification(sql_conn, signed_payload, now)

    try:
        body = verify_notification(core, signed_payload)
    except base.VerificationError as e:
        _mark_failed(sql_conn, result, now, 'APPLE_NOTIFICATION_VERIFICATION_FAILURE', e.msg, None, {})
        return result

    details: base.JSONObject = {
        'uuid':           body.notificationUUID,
        'type':           enum_or_raw_str(body.notificationType, body.rawNotificationType),
        'subtype':        enum_or_raw_str(body.subtype, body.rawSubtype),
        'original_tx_id': None,
    }
    result.notification_type = typing.cast(str, details['type'] or '')
    log.info(f'Received Apple notification {result.notification_id} (uuid={body.notificationUUID}, type={details["type"]}, subtype={details["subtype"]})')
    if base.UNSAFE_LOGGING:
        log.info(f'Decoded Apple notification: {print_obj(body)}')

    user_id: int | None = None
    try:
        with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
            _ = backend.update_apple_notification_tx(tx                = tx,
                                                     notification_id   = result.notification_id,
                                                     unix_ts_ms        = now,
                                                     notification_uuid = body.notificationUUID,
                                                     notification_type = typing.cast(str | None, details['type']),
                                                     subtype           = typing.cast(str | None, details['subtype']))

            # NOTE: Apple redelivers notifications it considers unacknowledged, drop the ones we
            # have already applied
            if body.notificationUUID and backend.apple_notification_uuid_is_processed_tx(tx, body.notificationUUID, exclude_id=result.notification_id):
                log.info(f'Apple notification {body.notificationUUID} was already processed, marking delivery {result.notification_id} as a duplicate')
                _             = backend.update_apple_notification_tx(tx, result.notification_id, now, processing_status=base.NotificationProcessingStatus.Duplicate)
                result.status = base.NotificationProcessingStatus.Duplicate
                return result

            tx_info: AppleJWSTransactionDecodedPayload | None = None
            sub:     backend.SubscriptionRow | None           = None
            if body.notificationType != AppleNotificationV2.TEST:
                signed_tx_info = body.data.signedTransactionInfo if body.data else None
                if signed_tx_info:
                    tx_info                   = verify_signed_transaction(core, signed_tx_info)
                    details['original_tx_id'] = tx_info.originalTransactionId
                    if tx_info.originalTransactionId:
                        sub = backend.find_subscription_by_original_tx_id_tx(tx, tx_info.originalTransactionId)
                        if sub:
                            user_id = sub.user_id

            ctx = HandlerContext(tx              = tx,
                                 core            = core,
                                 body            = body,
                                 tx_info         = tx_info,
                                 subscription    = sub,
                                 notification_id = result.notification_id,
                                 details         = details,
                                 unix_ts_ms      = now)
            handle_notification(ctx)

            _ = backend.update_apple_notification_tx(tx                = tx,
                                                     notification_id   = result.notification_id,
                                                     unix_ts_ms        = now,
                                                     processing_status = base.NotificationProcessingStatus.Processed,
                                                     original_tx_id    = tx_info.originalTransactionId if tx_info else None,
                                                     tx_info           = tx_info_to_json(tx_info) if tx_info else None,
                                                     subscription_id   = ctx.subscription_id)
            result.status          = base.NotificationProcessingStatus.Processed
            result.subscription_id = ctx.subscription_id

    except base.BackendError as e:
        # NOTE: The transaction was rolled back on the way out of the `with`, record the failure
        # separately so that Apple's retry starts from a clean state
        log.error(f'Failed to process Apple notification {result.notification_id} ({details["type"]}): {e.msg}')
        audit_event = e.audit_event
        if not audit_event:
            audit_event = 'APPLE_NOTIFICATION_VERIFICATION_FAILURE' if isinstance(e, base.VerificationError) else 'APPLE_NOTIFICATION_FAILURE'
        _mark_failed(sql_conn, result, now, audit_event, e.msg, e.user_id if e.user_id is not None else user_id, details)
    except sqlite3.Error:
        msg = f'DB error whilst processing Apple notification: {traceback.format_exc()}'
        log.error(msg)
        _mark_failed(sql_conn, result, now, 'APPLE_NOTIFICATION_FAILURE', msg, user_id, details)
    except Exception:
        msg = f'Unexpected error whilst processing Apple notification: {traceback.format_exc()}'
        log.error(msg)
        _mark_failed(sql_conn, result, now, 'APPLE_NOTIFICATION_FAILURE', msg, user_id, details)

    return result

def verify_purchase(core: Core, sql_conn: sqlite3.Connection, receipt: str, user_id: int, unix_ts_ms: int) -> VerifyPurchaseResult:
    '''
    Activate the subscription a client just purchased. The signed transaction the client received
    from StoreKit is verified locally against Apple's root certificates and the subscription is
    activated immediately. The App Store Server API is not consulted here, the receipt is queued
    and confirmed upstream later by the reconciliation job (see reconcile.py).
    '''
    try:
        tx_info = verify_signed_transaction(core, receipt)
    except base.VerificationError as e:
        raise base.ValidationError(f'Invalid receipt: {e.msg}', user_id=user_id) from e

    if user_id_from_app_account_token(tx_info.appAccountToken) != user_id:
        raise base.ValidationError('User ID does not match the purchase receipt.', user_id=user_id)

    if not tx_info.transactionId:
        raise base.ValidationError('Could not find transactionId in receipt.', user_id=user_id)

    if not tx_info.productId or not tx_info.expiresDate:
        raise base.ValidationError('Missing product or expiration info in receipt.', user_id=user_id)

    if tx_info.revocationDate:
        raise base.ValidationError(f'Transaction {tx_info.transactionId} was revoked by Apple.', user_id=user_id)

    original_tx_id = tx_info.originalTransactionId or tx_info.transactionId
    result         = VerifyPurchaseResult()
    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
        plan = plan_for_product_id_tx(tx, tx_info.productId)
        if not plan:
            raise base.ConfigurationError(f'Plan with product ID \'{tx_info.productId}\' not found in our system.', user_id=user_id)

        existing = backend.find_subscription_by_original_tx_id_tx(tx, original_tx_id)
        if existing and existing.user_id != user_id:
            raise base.ValidationError(f'Purchase {original_tx_id} already belongs to another user.', user_id=user_id)

        # NOTE: Revocation is terminal, a receipt signed before the refund must not restore access
        if existing and existing.status == base.SubscriptionStatus.Revoked:
            raise base.ValidationError(f'Purchase {original_tx_id} was refunded or revoked.', user_id=user_id)

        _ = backend.cancel_active_subscriptions_tx(tx, user_id, keep_id=existing.id if existing else None, unix_ts_ms=unix_ts_ms)
        if existing:
            existing.plan_id            = plan.id
            existing.status             = base.SubscriptionStatus.Active
            existing.expiry_unix_ts_ms  = tx_info.expiresDate
            existing.latest_tx_id       = tx_info.transactionId
            _                           = backend.update_subscription_tx(tx, existing, unix_ts_ms)
            result.subscription         = existing
        else:
            result.subscription = backend.add_subscription_tx(tx                = tx,
                                                              user_id           = user_id,
                                                              plan_id           = plan.id,
                                                              status            = base.SubscriptionStatus.Active,
                                                              expiry_unix_ts_ms = tx_info.expiresDate,
                                                              original_tx_id    = original_tx_id,
                                                              latest_tx_id      = tx_info.transactionId,
                                                              unix_ts_ms        = unix_ts_ms)

        result.receipt = backend.add_apple_receipt_tx(tx, tx_info.transactionId, user_id, receipt, unix_ts_ms)
        _              = backend.add_audit_log_tx(tx         = tx,
                                                  event      = 'APPLE_PURCHASE_VERIFIED',
                                                  status     = base.AuditStatus.Success,
                                                  message    = f'Subscription {result.subscription.id} activated for plan \'{tx_info.productId}\' pending upstream verification of tx {tx_info.transactionId}',
                                                  unix_ts_ms = unix_ts_ms,
                                                  details    = {'original_tx_id': original_tx_id, 'receipt_id': result.receipt.id},
                                                  user_id    = user_id)
    return result

@flask_blueprint.route(FLASK_ROUTE_VERIFY_PURCHASE, methods=['POST'])
def verify_apple_purchase() -> flask.Response:
    get: server.GetJSONFromFlaskRequest = server.get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return server.html_bad_response(400, get.err_msg)

    err          = base.ErrorSink()
    receipt: str = base.json_dict_require_str(get.json, 'receipt', err)
    user_id: int = base.json_dict_require_int_or_int_str(get.json, 'user_id', err)
    if err.has():
        return server.html_bad_response(400, err.msg_list)

    core = typing.cast(Core, flask.current_app.config[FLASK_CONFIG_PLATFORM_APPLE_CORE_KEY])
    now  = base.unix_ts_ms_now()
    with server.open_db_from_flask_request_context(flask.current_app) as db:
        try:
            _      = verify_purchase(core, db.sql_conn, receipt, user_id, now)
            active = subscriptions.get_active_subscription(db.sql_conn, user_id, now)
        except base.BackendError as e:
            return server.html_response_from_backend_error(e)

    result = server.html_good_response(active)
    return result

@flask_blueprint.route(FLASK_ROUTE_NOTIFICATIONS_APPLE_V2, methods=['POST'])
def notifications_apple_v2() -> flask.Response:
    get: server.GetJSONFromFlaskRequest = server.get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        log.error(f'Failed to parse Apple notification as JSON: {get.err_msg}')
        return server.html_bad_response(400, get.err_msg)

    err            = base.ErrorSink()
    signed_payload = base.json_dict_require_str(get.json, 'signedPayload', err)
    if err.has():
        log.error(f'Failed to parse Apple notification: {err.build()}')
        return server.html_bad_response(400, err.msg_list)

    assert FLASK_CONFIG_PLATFORM_APPLE_CORE_KEY in flask.current_app.config
    core = typing.cast(Core, flask.current_app.config[FLASK_CONFIG_PLATFORM_APPLE_CORE_KEY])
    with server.open_db_from_flask_request_context(flask.current_app) as db:
        ingest = ingest_notification(core, db.sql_conn, signed_payload)

    # NOTE: Anything but a 200 makes Apple redeliver the notification later
    if not ingest.success:
        return server.html_bad_response(500, ingest.err_msg)

    result = flask.jsonify({'status': 'received'})
    return result

def init(key_bytes:      bytes,
         key_id:         str,
         issuer_id:      str,
         bundle_id:      str,
         root_certs:     list[bytes],
         sandbox:        bool,
         app_apple_id:   int | None,
         free_plan_name: str) -> Core:
    apple_env = AppleEnvironment.SANDBOX if sandbox else AppleEnvironment.PRODUCTION
    if apple_env != AppleEnvironment.SANDBOX and app_apple_id is None:
        raise base.ConfigurationError('App Apple ID must be set in a non-sandbox environment')

    app_store_server_api_client = AppleAppStoreServerAPIClient(signing_key=key_bytes,
                                                               key_id=key_id,
                                                               issuer_id=issuer_id,
                                                               bundle_id=bundle_id,
                                                               environment=apple_env)
    signed_data_verifier        = AppleSignedDataVerifier     (root_certificates=root_certs,
                                                               enable_online_checks=True,
                                                               environment=apple_env,
                                                               bundle_id=bundle_id,
                                                               app_apple_id=app_apple_id)

    result = Core(app_store_server_api_client, signed_data_verifier, free_plan_name)
    return result

def equip_flask_routes(core: Core, flask_app: flask.Flask):
    flask_app.register_blueprint(flask_blueprint)

    # NOTE: Add the core data structure for Apple into the flask config dictionary. This makes it
    # accessible in routes across concurrent connections.
    flask_app.config[FLASK_CONFIG_PLATFORM_APPLE_CORE_KEY] = core
