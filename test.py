'''
Testing module for the subscription backend, testing internal and public APIs.

The backend tests call the DB APIs directly to test the outcome on the tables in the SQLite
database.

The server tests spins up a local Flask instance as per
(https://flask.palletsprojects.com/en/stable/testing/#sending-requests-with-the-test-client) and
sends a request using the test client and we vet the request and response produced by hitting said
endpoint.

Apple's services are replaced by fakes. Signed payloads are opaque tokens that the fake verifier
maps to decoded models built from `appstoreserverlibrary.models`, any other token fails
verification the same way a forged JWS would.
'''

import flask
import json
import werkzeug
import dataclasses
import typing
import sqlite3
import traceback
import pytest

import backend
import base
import plans
import platform_apple
import reconcile
import server
import subscriptions

from appstoreserverlibrary.models.ResponseBodyV2DecodedPayload import ResponseBodyV2DecodedPayload as AppleResponseBodyV2DecodedPayload
from appstoreserverlibrary.models.JWSTransactionDecodedPayload import JWSTransactionDecodedPayload as AppleJWSTransactionDecodedPayload
from appstoreserverlibrary.models.JWSRenewalInfoDecodedPayload import JWSRenewalInfoDecodedPayload as AppleJWSRenewalInfoDecodedPayload
from appstoreserverlibrary.models.TransactionInfoResponse      import TransactionInfoResponse      as AppleTransactionInfoResponse
from appstoreserverlibrary.models.Data                         import Data                         as AppleData
from appstoreserverlibrary.models.Environment                  import Environment                  as AppleEnvironment
from appstoreserverlibrary.models.Type                         import Type                         as AppleType
from appstoreserverlibrary.models.Subtype                      import Subtype                      as AppleSubtype
from appstoreserverlibrary.models.NotificationTypeV2           import NotificationTypeV2           as AppleNotificationTypeV2
from appstoreserverlibrary.models.RevocationReason             import RevocationReason             as AppleRevocationReason

from appstoreserverlibrary.api_client import (
    APIException as AppleAPIException,
)

from appstoreserverlibrary.signed_data_verifier import (
    VerificationException as AppleVerificationException,
    VerificationStatus    as AppleVerificationStatus,
)

FREE_PLAN_NAME:        str = 'Free Plan'
BASIC_PRODUCT_ID:      str = 'plan.basic.monthly'
PRO_PRODUCT_ID:        str = 'plan.pro.monthly'
PRO_SALE_PRODUCT_ID:   str = 'plan.pro.monthly.sale'
BUNDLE_ID:             str = 'com.example.subscriptions'
NOW_UNIX_TS_MS:        int = 1_760_000_000_000
MONTH_UNIX_TS_MS:      int = base.MILLISECONDS_IN_DAY * 30

class FakeSignedDataVerifier:
    '''Stands in for `SignedDataVerifier`, signed payloads are looked up instead of verified'''
    def __init__(self):
        self.notifications: dict[str, AppleResponseBodyV2DecodedPayload] = {}
        self.transactions:  dict[str, AppleJWSTransactionDecodedPayload] = {}
        self.renewals:      dict[str, AppleJWSRenewalInfoDecodedPayload] = {}

    def verify_and_decode_notification(self, signed_payload: str) -> AppleResponseBodyV2DecodedPayload:
        if signed_payload not in self.notifications:
            raise AppleVerificationException(AppleVerificationStatus.VERIFICATION_FAILURE)
        return self.notifications[signed_payload]

    def verify_and_decode_signed_transaction(self, signed_transaction: str) -> AppleJWSTransactionDecodedPayload:
        if signed_transaction not in self.transactions:
            raise AppleVerificationException(AppleVerificationStatus.VERIFICATION_FAILURE)
        return self.transactions[signed_transaction]

    def verify_and_decode_renewal_info(self, signed_renewal_info: str) -> AppleJWSRenewalInfoDecodedPayload:
        if signed_renewal_info not in self.renewals:
            raise AppleVerificationException(AppleVerificationStatus.VERIFICATION_FAILURE)
        return self.renewals[signed_renewal_info]

class FakeAppStoreServerAPIClient:
    '''Stands in for `AppStoreServerAPIClient`, unknown transactions 404 like a not yet visible purchase'''
    def __init__(self):
        self.responses: dict[str, AppleTransactionInfoResponse | Exception] = {}
        self.calls:     list[str]                                           = []

    def get_transaction_info(self, transaction_id: str) -> AppleTransactionInfoResponse:
        self.calls.append(transaction_id)
        response = self.responses.get(transaction_id)
        if response is None:
            raise AppleAPIException(404)
        if isinstance(response, Exception):
            raise response
        return response

@dataclasses.dataclass
class Catalog:
    free_id:   int = 0
    basic_id:  int = 0
    pro_id:    int = 0
    ad_free:   int = 0
    priority:  int = 0
    exporting: int = 0

@dataclasses.dataclass
class TestingContext:
    """
    Sets up a database with the necessary tables and flask instance (with the Apple routes equipped)
    that you can simulate HTTP requests to. This class is designed to be used in a `with` context
    such that the DB is closed on scope exit.

    For tests, this means you probably want to supply a in-memory URI-style path to make a transient
    DB that is wiped on scope exit. This means tests have a fresh DB to work with for each `with`
    context and each chunk of tests to execute.
    """

    db:           backend.SetupDBResult
    sql_conn:     sqlite3.Connection
    flask_app:    flask.Flask
    flask_client: werkzeug.Client
    verifier:     FakeSignedDataVerifier
    api_client:   FakeAppStoreServerAPIClient
    core:         platform_apple.Core
    catalog:      Catalog

    db_path:      str  = ''
    uri:          bool = False

    def __init__(self, db_path: str, uri: bool):
        self.db_path = db_path
        self.uri     = uri

    def __enter__(self):
        err     = base.ErrorSink()
        self.db = backend.setup_db(path=self.db_path, uri=self.uri, err=err)
        assert len(err.msg_list) == 0, err.msg_list
        assert self.db.sql_conn
        self.sql_conn = self.db.sql_conn

        self.verifier   = FakeSignedDataVerifier()
        self.api_client = FakeAppStoreServerAPIClient()
        self.core       = platform_apple.Core(app_store_server_api_client = typing.cast(typing.Any, self.api_client),
                                              signed_data_verifier        = typing.cast(typing.Any, self.verifier),
                                              free_plan_name              = FREE_PLAN_NAME)
        self.catalog    = seed_catalog(self.sql_conn)

        self.flask_app = server.init(testing_mode=True, db_path=self.db_path, db_path_is_uri=self.uri, free_plan_name=FREE_PLAN_NAME)
        platform_apple.equip_flask_routes(self.core, self.flask_app)
        self.flask_client = self.flask_app.test_client()
        return self

    def __exit__(self,
                 exc_type: object | None,
                 exc_value: object | None,
                 traceback: traceback.TracebackException | None):
        self.sql_conn.close()
        return False

def seed_catalog(sql_conn: sqlite3.Connection) -> Catalog:
    # Free <- Basic <- Pro, each level adds a feature and raises the message allowance
    result = Catalog()
    with base.SQLTransaction(sql_conn) as tx:
        result.free_id  = backend.add_plan_tx(tx, FREE_PLAN_NAME, product_id=None,             display_order=0, role=base.PlanRole.Free)
        result.basic_id = backend.add_plan_tx(tx, 'Basic',        product_id=BASIC_PRODUCT_ID, display_order=1, role=base.PlanRole.Basic, inherit_from_id=result.free_id)
        result.pro_id   = backend.add_plan_tx(tx,
                                              'Pro',
                                              product_id            = PRO_PRODUCT_ID,
                                              display_order         = 2,
                                              role                  = base.PlanRole.Pro,
                                              inherit_from_id       = result.basic_id,
                                              sale_product_id       = PRO_SALE_PRODUCT_ID,
                                              sale_start_unix_ts_ms = NOW_UNIX_TS_MS - base.MILLISECONDS_IN_DAY,
                                              sale_end_unix_ts_ms   = NOW_UNIX_TS_MS + base.MILLISECONDS_IN_DAY)

        result.ad_free   = backend.add_feature_tx(tx, 'No ads',           display_order=2)
        result.priority  = backend.add_feature_tx(tx, 'Priority support', display_order=1)
        result.exporting = backend.add_feature_tx(tx, 'Export history',   display_order=0)
        backend.add_plan_feature_tx(tx, result.basic_id, result.ad_free)
        backend.add_plan_feature_tx(tx, result.pro_id,   result.priority)
        backend.add_plan_feature_tx(tx, result.pro_id,   result.exporting)

        messages = backend.add_entitlement_tx(tx, 'Messages', 'messages', is_metered=True,  default_limit=10,   reset_period=base.ResetPeriod.Day)
        exports  = backend.add_entitlement_tx(tx, 'Exports',  'exports',  is_metered=False, default_limit=None, reset_period=None)
        _        = backend.add_plan_entitlement_link_tx(tx, result.free_id,  messages, limit_override=None)
        _        = backend.add_plan_entitlement_link_tx(tx, result.basic_id, messages, limit_override=100)
        _        = backend.add_plan_entitlement_link_tx(tx, result.pro_id,   messages, limit_override=1000)
        _        = backend.add_plan_entitlement_link_tx(tx, result.pro_id,   exports,  limit_override=None)
    return result

def make_tx_info(tx_id: str, original_tx_id: str, product_id: str, expires_unix_ts_ms: int, app_account_token: str | None = None) -> AppleJWSTransactionDecodedPayload:
    result                       = AppleJWSTransactionDecodedPayload()
    result.appAccountToken       = app_account_token
    result.bundleId              = BUNDLE_ID
    result.environment           = AppleEnvironment.SANDBOX
    result.rawEnvironment        = 'Sandbox'
    result.expiresDate           = expires_unix_ts_ms
    result.originalTransactionId = original_tx_id
    result.transactionId         = tx_id
    result.productId             = product_id
    result.purchaseDate          = expires_unix_ts_ms - MONTH_UNIX_TS_MS
    result.type                  = AppleType.AUTO_RENEWABLE_SUBSCRIPTION
    result.rawType               = 'Auto-Renewable Subscription'
    result.revocationDate        = None
    result.revocationReason      = None
    result.rawRevocationReason   = None
    result.offerIdentifier       = None
    result.offerType             = None
    result.rawOfferType          = None
    return result

def add_notification(test:                TestingContext,
                     signed_payload:      str,
                     uuid:                str,
                     notification_type:   AppleNotificationTypeV2,
                     tx_info:             AppleJWSTransactionDecodedPayload | None,
                     subtype:             AppleSubtype | None                      = None,
                     renewal_info:        AppleJWSRenewalInfoDecodedPayload | None = None) -> AppleResponseBodyV2DecodedPayload:
    '''Register a decoded notification with the fake verifier under the token `signed_payload`'''
    signed_tx_info:      str | None = None
    signed_renewal_info: str | None = None
    if tx_info:
        signed_tx_info = f'{signed_payload}.tx'
        test.verifier.transactions[signed_tx_info] = tx_info
    if renewal_info:
        signed_renewal_info = f'{signed_payload}.renewal'
        test.verifier.renewals[signed_renewal_info] = renewal_info

    body                     = AppleResponseBodyV2DecodedPayload()
    body.data                = AppleData(environment           = AppleEnvironment.SANDBOX,
                                         rawEnvironment        = 'Sandbox',
                                         bundleId              = BUNDLE_ID,
                                         signedTransactionInfo = signed_tx_info,
                                         signedRenewalInfo     = signed_renewal_info)
    body.notificationType    = notification_type
    body.rawNotificationType = notification_type.value
    body.subtype             = subtype
    body.rawSubtype          = subtype.value if subtype else None
    body.notificationUUID    = uuid
    body.signedDate          = NOW_UNIX_TS_MS
    body.version             = '2.0'
    test.verifier.notifications[signed_payload] = body
    return body

def add_receipt(test: TestingContext, tx_info: AppleJWSTransactionDecodedPayload) -> str:
    result = f'receipt-{tx_info.transactionId}'
    test.verifier.transactions[result] = tx_info
    return result

def get_user_subscriptions(test: TestingContext, user_id: int) -> list[backend.SubscriptionRow]:
    with base.SQLTransaction(test.sql_conn) as tx:
        result = backend.get_subscriptions_for_user_tx(tx, user_id)
    return result

def get_audit_logs(test: TestingContext, event: str) -> list[backend.AuditLogRow]:
    with base.SQLTransaction(test.sql_conn) as tx:
        result = backend.get_audit_logs_tx(tx, event=event)
    return result

def get_notification(test: TestingContext, notification_id: int) -> backend.AppleNotificationRow:
    with base.SQLTransaction(test.sql_conn) as tx:
        result = backend.get_apple_notification_tx(tx, notification_id)
    assert result
    return result

def purchase_basic_for_user_42(test: TestingContext) -> platform_apple.VerifyPurchaseResult:
    token   = platform_apple.app_account_token_from_user_id(42)
    tx_info = make_tx_info('T1', 'T1', BASIC_PRODUCT_ID, NOW_UNIX_TS_MS + MONTH_UNIX_TS_MS, token)
    result  = platform_apple.verify_purchase(test.core, test.sql_conn, add_receipt(test, tx_info), user_id=42, unix_ts_ms=NOW_UNIX_TS_MS)
    return result

def test_plan_inheritance_merges_parent_then_child():
    with TestingContext(db_path='file:test_plan_inheritance_db?mode=memory&cache=shared', uri=True) as test:
        pro = plans.get_plan_detail(test.sql_conn, test.catalog.pro_id, NOW_UNIX_TS_MS)
        assert pro

        # NOTE: Features accumulate down the chain and are ordered by their display order
        assert [it['name'] for it in pro['features']] == ['Export history', 'Priority support', 'No ads']

        # NOTE: The closest link to the plan wins
        entitlements = {it['slug']: it for it in pro['entitlements']}
        assert entitlements['messages']['limit']        == 1000
        assert entitlements['messages']['reset_period'] == base.ResetPeriod.Day.value
        assert entitlements['exports']['limit']         is None
        assert pro['sale']['active']                    is True

        basic = plans.get_plan_detail(test.sql_conn, test.catalog.basic_id, NOW_UNIX_TS_MS)
        assert basic
        assert [it['name'] for it in basic['features']] == ['No ads']
        assert [(it['slug'], it['limit']) for it in basic['entitlements']] == [('messages', 100)]

        free = plans.get_plan_detail(test.sql_conn, test.catalog.free_id, NOW_UNIX_TS_MS)
        assert free
        assert free['features'] == []
        assert [(it['slug'], it['limit']) for it in free['entitlements']] == [('messages', 10)]

        # NOTE: Every plan, in display order
        all_plans = plans.get_all_plan_details(test.sql_conn, NOW_UNIX_TS_MS)
        assert [it['id'] for it in all_plans] == [test.catalog.free_id, test.catalog.basic_id, test.catalog.pro_id]

        # NOTE: Sale window is half-open
        pro_after_sale = plans.get_plan_detail(test.sql_conn, test.catalog.pro_id, NOW_UNIX_TS_MS + base.MILLISECONDS_IN_DAY)
        assert pro_after_sale
        assert pro_after_sale['sale']['active'] is False

def test_plan_inheritance_dangling_parent_and_cycle():
    with TestingContext(db_path='file:test_plan_inheritance_cycle_db?mode=memory&cache=shared', uri=True) as test:
        # NOTE: A parent that doesn't exist is ignored
        with base.SQLTransaction(test.sql_conn) as tx:
            _ = backend.set_plan_inherit_from_tx(tx, test.catalog.basic_id, 9999)
        basic = plans.get_plan_detail(test.sql_conn, test.catalog.basic_id, NOW_UNIX_TS_MS)
        assert basic
        assert [(it['slug'], it['limit']) for it in basic['entitlements']] == [('messages', 100)]

        # NOTE: Free -> Pro -> Basic -> Free loops
        with base.SQLTransaction(test.sql_conn) as tx:
            _ = backend.set_plan_inherit_from_tx(tx, test.catalog.basic_id, test.catalog.free_id)
            _ = backend.set_plan_inherit_from_tx(tx, test.catalog.free_id,  test.catalog.pro_id)

        with pytest.raises(base.ConfigurationError):
            _ = plans.get_plan_detail(test.sql_conn, test.catalog.pro_id, NOW_UNIX_TS_MS)

        with pytest.raises(base.ConfigurationError):
            _ = plans.get_all_plan_details(test.sql_conn, NOW_UNIX_TS_MS)

        response: werkzeug.test.TestResponse = test.flask_client.get(server.ROUTE_GET_ALL_PLANS)
        assert response.status_code == 400

def test_memoised_resolution_visits_each_plan_once():
    with TestingContext(db_path='file:test_plan_memo_db?mode=memory&cache=shared', uri=True) as test:
        with base.SQLTransaction(test.sql_conn) as tx:
            catalog = backend.get_plan_catalog_tx(tx)

        cache: dict[int, plans.ResolvedPlanAttributes] = {}
        pro_attribs = plans.resolve_plan(catalog[test.catalog.pro_id], catalog, cache)
        assert set(cache.keys()) == {test.catalog.free_id, test.catalog.basic_id, test.catalog.pro_id}

        # NOTE: Resolving a parent afterwards is served from the cache
        basic_attribs = plans.resolve_plan(catalog[test.catalog.basic_id], catalog, cache)
        assert basic_attribs is cache[test.catalog.basic_id]
        assert set(pro_attribs.features.keys()) == {test.catalog.ad_free, test.catalog.priority, test.catalog.exporting}

def test_subscription_lifecycle_keeps_one_active_subscription():
    with TestingContext(db_path='file:test_subscription_lifecycle_db?mode=memory&cache=shared', uri=True) as test:
        free = subscriptions.subscribe_free_plan(test.sql_conn, user_id=7, free_plan_name=FREE_PLAN_NAME, unix_ts_ms=NOW_UNIX_TS_MS)
        assert free.plan_id           == test.catalog.free_id
        assert free.expiry_unix_ts_ms is None

        basic = subscriptions.subscribe_to_plan(test.sql_conn, user_id=7, plan_id=test.catalog.basic_id, free_plan_name=FREE_PLAN_NAME, unix_ts_ms=NOW_UNIX_TS_MS)
        assert basic.expiry_unix_ts_ms == NOW_UNIX_TS_MS + subscriptions.SUBSCRIBE_TO_PLAN_DURATION_MS

        # NOTE: Subscribing to the same plan again extends the existing subscription
        later  = NOW_UNIX_TS_MS + base.MILLISECONDS_IN_DAY
        again  = subscriptions.subscribe_to_plan(test.sql_conn, user_id=7, plan_id=test.catalog.basic_id, free_plan_name=FREE_PLAN_NAME, unix_ts_ms=later)
        assert again.id                == basic.id
        assert again.expiry_unix_ts_ms == later + subscriptions.SUBSCRIBE_TO_PLAN_DURATION_MS

        subs = get_user_subscriptions(test, 7)
        assert len(subs)                                                      == 2
        assert [it.status for it in subs]                                     == [base.SubscriptionStatus.Canceled, base.SubscriptionStatus.Active]
        assert len([it for it in subs if it.status == base.SubscriptionStatus.Active]) == 1

        active = subscriptions.get_active_subscription(test.sql_conn, 7, NOW_UNIX_TS_MS)
        assert active
        assert active['id']                 == basic.id
        assert active['plan']['product_id'] == BASIC_PRODUCT_ID

        with pytest.raises(base.ValidationError):
            _ = subscriptions.subscribe_to_plan(test.sql_conn, user_id=7, plan_id=9999, free_plan_name=FREE_PLAN_NAME, unix_ts_ms=NOW_UNIX_TS_MS)

        with pytest.raises(base.ConfigurationError):
            _ = subscriptions.subscribe_free_plan(test.sql_conn, user_id=7, free_plan_name='Missing Plan', unix_ts_ms=NOW_UNIX_TS_MS)

        # NOTE: The DB itself refuses a second active subscription for a user
        with pytest.raises(sqlite3.IntegrityError):
            with base.SQLTransaction(test.sql_conn) as tx:
                _ = backend.add_subscription_tx(tx, 7, test.catalog.pro_id, base.SubscriptionStatus.Active, None, None, None, NOW_UNIX_TS_MS)

        err = base.ErrorSink()
        assert backend.verify_db(test.sql_conn, err), err.msg_list

def test_verify_purchase_activates_and_queues_receipt():
    with TestingContext(db_path='file:test_verify_purchase_db?mode=memory&cache=shared', uri=True) as test:
        # NOTE: User 42 is on the free plan and buys Basic
        _      = subscriptions.subscribe_free_plan(test.sql_conn, user_id=42, free_plan_name=FREE_PLAN_NAME, unix_ts_ms=NOW_UNIX_TS_MS - 1)
        result = purchase_basic_for_user_42(test)

        assert result.subscription.status            == base.SubscriptionStatus.Active
        assert result.subscription.plan_id           == test.catalog.basic_id
        assert result.subscription.original_tx_id    == 'T1'
        assert result.subscription.expiry_unix_ts_ms == NOW_UNIX_TS_MS + MONTH_UNIX_TS_MS
        assert result.receipt.status                 == base.ReceiptStatus.PendingVerification
        assert result.receipt.verification_attempts  == 0

        # NOTE: Activation never goes upstream, that's left to the reconciliation job
        assert test.api_client.calls == []

        subs = get_user_subscriptions(test, 42)
        assert [it.status for it in subs] == [base.SubscriptionStatus.Canceled, base.SubscriptionStatus.Active]
        assert len(get_audit_logs(test, 'APPLE_PURCHASE_VERIFIED')) == 1

        # NOTE: Verifying the same purchase again reuses the row and the receipt
        again = purchase_basic_for_user_42(test)
        assert again.subscription.id == result.subscription.id
        assert again.receipt.id      == result.receipt.id
        assert len(get_user_subscriptions(test, 42)) == 2

        # NOTE: Receipt was issued to user 42, not 43
        with pytest.raises(base.ValidationError):
            _ = platform_apple.verify_purchase(test.core, test.sql_conn, 'receipt-T1', user_id=43, unix_ts_ms=NOW_UNIX_TS_MS)

        # NOTE: Forged receipts are rejected as bad input
        with pytest.raises(base.ValidationError):
            _ = platform_apple.verify_purchase(test.core, test.sql_conn, 'forged', user_id=42, unix_ts_ms=NOW_UNIX_TS_MS)

        # NOTE: Unknown product
        token    = platform_apple.app_account_token_from_user_id(42)
        unknown  = make_tx_info('T2', 'T2', 'plan.unknown', NOW_UNIX_TS_MS + MONTH_UNIX_TS_MS, token)
        with pytest.raises(base.ConfigurationError):
            _ = platform_apple.verify_purchase(test.core, test.sql_conn, add_receipt(test, unknown), user_id=42, unix_ts_ms=NOW_UNIX_TS_MS)

        # NOTE: Receipt without an expiry
        no_expiry             = make_tx_info('T3', 'T3', BASIC_PRODUCT_ID, 0, token)
        no_expiry.expiresDate = None
        with pytest.raises(base.ValidationError):
            _ = platform_apple.verify_purchase(test.core, test.sql_conn, add_receipt(test, no_expiry), user_id=42, unix_ts_ms=NOW_UNIX_TS_MS)

        # NOTE: A purchase is bound to whoever first activated it
        hijack = make_tx_info('T4', 'T1', BASIC_PRODUCT_ID, NOW_UNIX_TS_MS + MONTH_UNIX_TS_MS, platform_apple.app_account_token_from_user_id(43))
        with pytest.raises(base.ValidationError):
            _ = platform_apple.verify_purchase(test.core, test.sql_conn, add_receipt(test, hijack), user_id=43, unix_ts_ms=NOW_UNIX_TS_MS)

        # NOTE: Purchasing at the sale price maps onto the plan on sale
        sale = make_tx_info('T5', 'T5', PRO_SALE_PRODUCT_ID, NOW_UNIX_TS_MS + MONTH_UNIX_TS_MS, token)
        on_sale = platform_apple.verify_purchase(test.core, test.sql_conn, add_receipt(test, sale), user_id=42, unix_ts_ms=NOW_UNIX_TS_MS)
        assert on_sale.subscription.plan_id == test.catalog.pro_id

def test_app_account_token_maps_to_user_id():
    assert platform_apple.user_id_from_app_account_token(platform_apple.app_account_token_from_user_id(42)) == 42
    assert platform_apple.user_id_from_app_account_token('42')                                             == 42
    assert platform_apple.user_id_from_app_account_token(None)                                             is None
    assert platform_apple.user_id_from_app_account_token('not-a-token')                                    is None
    assert platform_apple.user_id_from_app_account_token('00000000-0000-0000-0000-000000000000')           is None

def test_notification_deduplication():
    with TestingContext(db_path='file:test_notification_dedup_db?mode=memory&cache=shared', uri=True) as test:
        tx_info = make_tx_info('T1', 'T1', BASIC_PRODUCT_ID, NOW_UNIX_TS_MS + MONTH_UNIX_TS_MS, platform_apple.app_account_token_from_user_id(42))
        _       = add_notification(test, 'subscribed', 'uuid-1', AppleNotificationTypeV2.SUBSCRIBED, tx_info, subtype=AppleSubtype.INITIAL_BUY)

        first = platform_apple.ingest_notification(test.core, test.sql_conn, 'subscribed', NOW_UNIX_TS_MS)
        assert first.status == base.NotificationProcessingStatus.Processed, first.err_msg
        assert first.success

        # NOTE: Apple redelivers the same notification
        second = platform_apple.ingest_notification(test.core, test.sql_conn, 'subscribed', NOW_UNIX_TS_MS + 1000)
        assert second.status == base.NotificationProcessingStatus.Duplicate
        assert second.success
        assert second.notification_id != first.notification_id

        # NOTE: Both deliveries are logged, the state change was applied once
        assert len(get_user_subscriptions(test, 42)) == 1
        assert len(get_audit_logs(test, 'SUBSCRIPTION_CREATED_BY_FALLBACK')) == 1

        first_row = get_notification(test, first.notification_id)
        assert first_row.processing_status  == base.NotificationProcessingStatus.Processed
        assert first_row.raw_signed_payload == 'subscribed'
        assert first_row.notification_type  == 'SUBSCRIBED'
        assert first_row.subtype            == 'INITIAL_BUY'
        assert first_row.original_tx_id     == 'T1'
        assert first_row.subscription_id    == first.subscription_id
        assert first_row.tx_info
        assert first_row.tx_info['productId'] == BASIC_PRODUCT_ID

        assert get_notification(test, second.notification_id).processing_status == base.NotificationProcessingStatus.Duplicate

        err = base.ErrorSink()
        assert backend.verify_db(test.sql_conn, err), err.msg_list

def test_notification_that_fails_verification_is_recorded():
    with TestingContext(db_path='file:test_notification_forged_db?mode=memory&cache=shared', uri=True) as test:
        result = platform_apple.ingest_notification(test.core, test.sql_conn, 'forged-payload', NOW_UNIX_TS_MS)
        assert result.status == base.NotificationProcessingStatus.Failed
        assert not result.success

        row = get_notification(test, result.notification_id)
        assert row.raw_signed_payload == 'forged-payload'
        assert row.processing_status  == base.NotificationProcessingStatus.Failed
        assert row.notification_uuid  is None

        audits = get_audit_logs(test, 'APPLE_NOTIFICATION_VERIFICATION_FAILURE')
        assert len(audits)               == 1
        assert audits[0].status          == base.AuditStatus.Failure
        assert audits[0].notification_id == result.notification_id

        # NOTE: The envelope verifies but the nested transaction doesn't
        body                            = add_notification(test, 'bad-tx', 'uuid-bad-tx', AppleNotificationTypeV2.DID_RENEW, None)
        assert body.data
        body.data.signedTransactionInfo = 'forged-tx'
        result                          = platform_apple.ingest_notification(test.core, test.sql_conn, 'bad-tx', NOW_UNIX_TS_MS)
        assert result.status == base.NotificationProcessingStatus.Failed
        assert len(get_audit_logs(test, 'APPLE_NOTIFICATION_VERIFICATION_FAILURE')) == 2

def test_subscribed_without_link_fails_then_retry_succeeds():
    with TestingContext(db_path='file:test_subscribed_unlinkable_db?mode=memory&cache=shared', uri=True) as test:
        # NOTE: No subscription for the original transaction and no app account token to fall back on
        unlinkable = make_tx_info('T9', 'T9', BASIC_PRODUCT_ID, NOW_UNIX_TS_MS + MONTH_UNIX_TS_MS, app_account_token=None)
        _          = add_notification(test, 'unlinkable', 'uuid-9', AppleNotificationTypeV2.SUBSCRIBED, unlinkable, subtype=AppleSubtype.INITIAL_BUY)
        failed     = platform_apple.ingest_notification(test.core, test.sql_conn, 'unlinkable', NOW_UNIX_TS_MS)
        assert failed.status == base.NotificationProcessingStatus.Failed

        audits = get_audit_logs(test, 'SUBSCRIBED_FAILURE_UNLINKABLE')
        assert len(audits)      == 1
        assert audits[0].status == base.AuditStatus.Failure
        with base.SQLTransaction(test.sql_conn) as tx:
            assert backend.find_subscription_by_original_tx_id_tx(tx, 'T9') is None

        # NOTE: The client activates the purchase, Apple's retry of the same notification now links
        token   = platform_apple.app_account_token_from_user_id(5)
        receipt = add_receipt(test, make_tx_info('T9', 'T9', BASIC_PRODUCT_ID, NOW_UNIX_TS_MS + MONTH_UNIX_TS_MS, token))
        _       = platform_apple.verify_purchase(test.core, test.sql_conn, receipt, user_id=5, unix_ts_ms=NOW_UNIX_TS_MS)

        retry = platform_apple.ingest_notification(test.core, test.sql_conn, 'unlinkable', NOW_UNIX_TS_MS + 1000)
        assert retry.status == base.NotificationProcessingStatus.Processed, retry.err_msg
        assert len(get_audit_logs(test, 'SUBSCRIPTION_CONFIRMED')) == 1

        # NOTE: Unknown product in a fallback is a catalog problem
        token   = platform_apple.app_account_token_from_user_id(6)
        unknown = make_tx_info('T10', 'T10', 'plan.unknown', NOW_UNIX_TS_MS + MONTH_UNIX_TS_MS, token)
        _       = add_notification(test, 'unknown-product', 'uuid-10', AppleNotificationTypeV2.SUBSCRIBED, unknown)
        result  = platform_apple.ingest_notification(test.core, test.sql_conn, 'unknown-product', NOW_UNIX_TS_MS)
        assert result.status == base.NotificationProcessingStatus.Failed
        assert len(get_audit_logs(test, 'SUBSCRIBED_FAILURE_PLAN_MISSING')) == 1
        assert len(get_user_subscriptions(test, 6))                         == 0

def test_notifications_update_the_same_subscription():
    with TestingContext(db_path='file:test_notifications_same_row_db?mode=memory&cache=shared', uri=True) as test:
        purchase = purchase_basic_for_user_42(test)
        token    = platform_apple.app_account_token_from_user_id(42)

        # NOTE: SUBSCRIBED arriving after the client already activated confirms the same row
        subscribed = make_tx_info('T1', 'T1', BASIC_PRODUCT_ID, NOW_UNIX_TS_MS + MONTH_UNIX_TS_MS, token)
        _          = add_notification(test, 'subscribed', 'uuid-1', AppleNotificationTypeV2.SUBSCRIBED, subscribed, subtype=AppleSubtype.INITIAL_BUY)
        result     = platform_apple.ingest_notification(test.core, test.sql_conn, 'subscribed', NOW_UNIX_TS_MS)
        assert result.status          == base.NotificationProcessingStatus.Processed, result.err_msg
        assert result.subscription_id == purchase.subscription.id

        # NOTE: A resubscribe to Pro through the same original transaction switches the plan
        resubscribed = make_tx_info('T2', 'T1', PRO_PRODUCT_ID, NOW_UNIX_TS_MS + 2 * MONTH_UNIX_TS_MS, token)
        _            = add_notification(test, 'resubscribed', 'uuid-2', AppleNotificationTypeV2.SUBSCRIBED, resubscribed, subtype=AppleSubtype.RESUBSCRIBE)
        result       = platform_apple.ingest_notification(test.core, test.sql_conn, 'resubscribed', NOW_UNIX_TS_MS + 1)
        assert result.status == base.NotificationProcessingStatus.Processed, result.err_msg

        subs = get_user_subscriptions(test, 42)
        assert len(subs)                 == 1
        assert subs[0].plan_id           == test.catalog.pro_id
        assert subs[0].latest_tx_id      == 'T2'
        assert subs[0].expiry_unix_ts_ms == NOW_UNIX_TS_MS + 2 * MONTH_UNIX_TS_MS

        # NOTE: Renewal extends the expiry
        renewed = make_tx_info('T3', 'T1', PRO_PRODUCT_ID, NOW_UNIX_TS_MS + 3 * MONTH_UNIX_TS_MS, token)
        _       = add_notification(test, 'renewed', 'uuid-3', AppleNotificationTypeV2.DID_RENEW, renewed)
        result  = platform_apple.ingest_notification(test.core, test.sql_conn, 'renewed', NOW_UNIX_TS_MS + 2)
        assert result.status == base.NotificationProcessingStatus.Processed, result.err_msg

        subs = get_user_subscriptions(test, 42)
        assert len(subs)                 == 1
        assert subs[0].status            == base.SubscriptionStatus.Active
        assert subs[0].latest_tx_id      == 'T3'
        assert subs[0].expiry_unix_ts_ms == NOW_UNIX_TS_MS + 3 * MONTH_UNIX_TS_MS
        assert len(get_audit_logs(test, 'USER_SUBSCRIPTION_RENEWED')) == 1

def test_renewal_preference_and_status_changes():
    with TestingContext(db_path='file:test_renewal_changes_db?mode=memory&cache=shared', uri=True) as test:
        purchase = purchase_basic_for_user_42(test)
        tx_info  = make_tx_info('T1', 'T1', BASIC_PRODUCT_ID, NOW_UNIX_TS_MS + MONTH_UNIX_TS_MS)

        # NOTE: Upgrade, the product to renew into comes from the renewal info
        renewal                       = AppleJWSRenewalInfoDecodedPayload()
        renewal.originalTransactionId = 'T1'
        renewal.productId             = BASIC_PRODUCT_ID
        renewal.autoRenewProductId    = PRO_PRODUCT_ID
        _      = add_notification(test, 'upgrade', 'uuid-1', AppleNotificationTypeV2.DID_CHANGE_RENEWAL_PREF, tx_info, subtype=AppleSubtype.UPGRADE, renewal_info=renewal)
        result = platform_apple.ingest_notification(test.core, test.sql_conn, 'upgrade', NOW_UNIX_TS_MS)
        assert result.status == base.NotificationProcessingStatus.Processed, result.err_msg

        with base.SQLTransaction(test.sql_conn) as tx:
            sub = backend.get_subscription_tx(tx, purchase.subscription.id)
        assert sub
        assert sub.plan_id == test.catalog.pro_id
        assert sub.status  == base.SubscriptionStatus.Active
        plan_changed = get_audit_logs(test, 'PLAN_CHANGED')
        assert len(plan_changed)      == 1
        assert plan_changed[0].status == base.AuditStatus.Info

        def ingest_and_get_status(token: str, uuid: str, notification_type: AppleNotificationTypeV2, subtype: AppleSubtype | None) -> base.SubscriptionStatus:
            _      = add_notification(test, token, uuid, notification_type, tx_info, subtype=subtype)
            result = platform_apple.ingest_notification(test.core, test.sql_conn, token, NOW_UNIX_TS_MS)
            assert result.status == base.NotificationProcessingStatus.Processed, result.err_msg
            with base.SQLTransaction(test.sql_conn) as tx:
                sub = backend.get_subscription_tx(tx, purchase.subscription.id)
            assert sub
            return sub.status

        assert ingest_and_get_status('auto-off',   'uuid-2', AppleNotificationTypeV2.DID_CHANGE_RENEWAL_STATUS, AppleSubtype.AUTO_RENEW_DISABLED) == base.SubscriptionStatus.Canceled
        assert ingest_and_get_status('auto-on',    'uuid-3', AppleNotificationTypeV2.DID_CHANGE_RENEWAL_STATUS, AppleSubtype.AUTO_RENEW_ENABLED)  == base.SubscriptionStatus.Active
        assert ingest_and_get_status('grace',      'uuid-4', AppleNotificationTypeV2.DID_FAIL_TO_RENEW,         AppleSubtype.GRACE_PERIOD)        == base.SubscriptionStatus.GracePeriod
        assert ingest_and_get_status('billing',    'uuid-5', AppleNotificationTypeV2.DID_FAIL_TO_RENEW,         None)                             == base.SubscriptionStatus.BillingIssue
        assert ingest_and_get_status('auto-on-2',  'uuid-6', AppleNotificationTypeV2.DID_CHANGE_RENEWAL_STATUS, AppleSubtype.AUTO_RENEW_ENABLED)  == base.SubscriptionStatus.Active
        assert len(get_audit_logs(test, 'USER_SUBSCRIPTION_RENEWAL_FAILED')) == 2

        # NOTE: Re-enabling auto-renew doesn't bring back a subscription that already ended
        with base.SQLTransaction(test.sql_conn) as tx:
            sub = backend.get_subscription_tx(tx, purchase.subscription.id)
            assert sub
            sub.status = base.SubscriptionStatus.Expired
            _          = backend.update_subscription_tx(tx, sub, NOW_UNIX_TS_MS)
        assert ingest_and_get_status('auto-on-3',  'uuid-7', AppleNotificationTypeV2.DID_CHANGE_RENEWAL_STATUS, AppleSubtype.AUTO_RENEW_ENABLED)  == base.SubscriptionStatus.Expired
        assert ingest_and_get_status('revoke',     'uuid-8', AppleNotificationTypeV2.REVOKE,                    None)                             == base.SubscriptionStatus.Revoked
        assert ingest_and_get_status('auto-on-4',  'uuid-9', AppleNotificationTypeV2.DID_CHANGE_RENEWAL_STATUS, AppleSubtype.AUTO_RENEW_ENABLED)  == base.SubscriptionStatus.Revoked
        assert subscriptions.get_active_subscription(test.sql_conn, 42, NOW_UNIX_TS_MS) is None

def test_expired_falls_back_to_free_plan():
    with TestingContext(db_path='file:test_expired_db?mode=memory&cache=shared', uri=True) as test:
        purchase = purchase_basic_for_user_42(test)
        tx_info  = make_tx_info('T1', 'T1', BASIC_PRODUCT_ID, NOW_UNIX_TS_MS + MONTH_UNIX_TS_MS)
        _        = add_notification(test, 'expired', 'uuid-1', AppleNotificationTypeV2.EXPIRED, tx_info, subtype=AppleSubtype.VOLUNTARY)

        result = platform_apple.ingest_notification(test.core, test.sql_conn, 'expired', NOW_UNIX_TS_MS + MONTH_UNIX_TS_MS)
        assert result.status == base.NotificationProcessingStatus.Processed, result.err_msg

        subs = get_user_subscriptions(test, 42)
        assert len(subs)                 == 2
        assert subs[0].id                == purchase.subscription.id
        assert subs[0].status            == base.SubscriptionStatus.Expired
        assert subs[1].status            == base.SubscriptionStatus.Active
        assert subs[1].plan_id           == test.catalog.free_id
        assert subs[1].expiry_unix_ts_ms is None
        assert subs[1].original_tx_id    == 'T1'
        assert len(get_audit_logs(test, 'FREE_PLAN_FALLBACK_CREATED')) == 1

        active = subscriptions.get_active_subscription(test.sql_conn, 42, NOW_UNIX_TS_MS)
        assert active
        assert active['plan']['name'] == FREE_PLAN_NAME

        # NOTE: An expiry for a purchase we never saw is a warning, nothing to retry
        unknown = make_tx_info('T7', 'T7', BASIC_PRODUCT_ID, NOW_UNIX_TS_MS)
        _       = add_notification(test, 'expired-unknown', 'uuid-2', AppleNotificationTypeV2.EXPIRED, unknown)
        result  = platform_apple.ingest_notification(test.core, test.sql_conn, 'expired-unknown', NOW_UNIX_TS_MS)
        assert result.status == base.NotificationProcessingStatus.Processed, result.err_msg
        assert get_audit_logs(test, 'EXPIRATION_WARNING_SUBSCRIPTION_MISSING')[0].status == base.AuditStatus.Warning

def test_refund_and_revoke():
    with TestingContext(db_path='file:test_refund_revoke_db?mode=memory&cache=shared', uri=True) as test:
        purchase = purchase_basic_for_user_42(test)

        refunded                     = make_tx_info('T1', 'T1', BASIC_PRODUCT_ID, NOW_UNIX_TS_MS + MONTH_UNIX_TS_MS)
        refunded.revocationDate      = NOW_UNIX_TS_MS + 5000
        refunded.revocationReason    = AppleRevocationReason.REFUNDED_DUE_TO_ISSUE
        refunded.rawRevocationReason = 1
        _      = add_notification(test, 'refund', 'uuid-1', AppleNotificationTypeV2.REFUND, refunded)
        result = platform_apple.ingest_notification(test.core, test.sql_conn, 'refund', NOW_UNIX_TS_MS + 6000)
        assert result.status == base.NotificationProcessingStatus.Processed, result.err_msg

        with base.SQLTransaction(test.sql_conn) as tx:
            sub = backend.get_subscription_tx(tx, purchase.subscription.id)
        assert sub
        assert sub.status             == base.SubscriptionStatus.Revoked
        assert sub.revoked_unix_ts_ms == NOW_UNIX_TS_MS + 5000
        assert sub.revocation_reason  == 'REFUND_DEV_ISSUE'
        assert subscriptions.get_active_subscription(test.sql_conn, 42, NOW_UNIX_TS_MS) is None

        # NOTE: The receipt signed before the refund is still valid, replaying it must not restore access
        with pytest.raises(base.ValidationError):
            _ = platform_apple.verify_purchase(test.core, test.sql_conn, 'receipt-T1', user_id=42, unix_ts_ms=NOW_UNIX_TS_MS + 8000)

        # NOTE: Nor is a transaction Apple already reports as revoked activated in the first place
        already_revoked                = make_tx_info('T8', 'T8', BASIC_PRODUCT_ID, NOW_UNIX_TS_MS + MONTH_UNIX_TS_MS, platform_apple.app_account_token_from_user_id(42))
        already_revoked.revocationDate = NOW_UNIX_TS_MS + 7500
        with pytest.raises(base.ValidationError):
            _ = platform_apple.verify_purchase(test.core, test.sql_conn, add_receipt(test, already_revoked), user_id=42, unix_ts_ms=NOW_UNIX_TS_MS + 8000)

        with base.SQLTransaction(test.sql_conn) as tx:
            sub = backend.get_subscription_tx(tx, purchase.subscription.id)
        assert sub
        assert sub.status             == base.SubscriptionStatus.Revoked
        assert sub.revoked_unix_ts_ms == NOW_UNIX_TS_MS + 5000
        assert sub.revocation_reason  == 'REFUND_DEV_ISSUE'
        assert subscriptions.get_active_subscription(test.sql_conn, 42, NOW_UNIX_TS_MS) is None

        # NOTE: Family sharing revoked for another user, no revocation date so the receipt time is used
        token   = platform_apple.app_account_token_from_user_id(8)
        receipt = add_receipt(test, make_tx_info('F1', 'F1', BASIC_PRODUCT_ID, NOW_UNIX_TS_MS + MONTH_UNIX_TS_MS, token))
        shared  = platform_apple.verify_purchase(test.core, test.sql_conn, receipt, user_id=8, unix_ts_ms=NOW_UNIX_TS_MS)

        revoked                     = make_tx_info('F1', 'F1', BASIC_PRODUCT_ID, NOW_UNIX_TS_MS + MONTH_UNIX_TS_MS)
        revoked.revocationReason    = AppleRevocationReason.REFUNDED_FOR_OTHER_REASON
        revoked.rawRevocationReason = 0
        _      = add_notification(test, 'revoke', 'uuid-2', AppleNotificationTypeV2.REVOKE, revoked)
        result = platform_apple.ingest_notification(test.core, test.sql_conn, 'revoke', NOW_UNIX_TS_MS + 7000)
        assert result.status == base.NotificationProcessingStatus.Processed, result.err_msg

        with base.SQLTransaction(test.sql_conn) as tx:
            sub = backend.get_subscription_tx(tx, shared.subscription.id)
        assert sub
        assert sub.status             == base.SubscriptionStatus.Revoked
        assert sub.revoked_unix_ts_ms == NOW_UNIX_TS_MS + 7000
        assert sub.revocation_reason  == 'REVOKE_REASON_0'

def test_missing_subscription_rolls_back_and_fails():
    with TestingContext(db_path='file:test_missing_subscription_db?mode=memory&cache=shared', uri=True) as test:
        tx_info = make_tx_info('T5', 'T5', BASIC_PRODUCT_ID, NOW_UNIX_TS_MS + MONTH_UNIX_TS_MS)
        _       = add_notification(test, 'renew-missing', 'uuid-1', AppleNotificationTypeV2.DID_RENEW, tx_info)
        result  = platform_apple.ingest_notification(test.core, test.sql_conn, 'renew-missing', NOW_UNIX_TS_MS)
        assert result.status == base.NotificationProcessingStatus.Failed

        row = get_notification(test, result.notification_id)
        assert row.processing_status == base.NotificationProcessingStatus.Failed
        assert row.subscription_id   is None
        assert len(get_audit_logs(test, 'RENEWAL_FAILURE_SUBSCRIPTION_MISSING')) == 1

        # NOTE: The decoded identifiers survive the rollback so the failed delivery can be found
        assert row.notification_uuid == 'uuid-1'
        assert row.notification_type == 'DID_RENEW'
        assert row.original_tx_id    == 'T5'

        # NOTE: Informational types without a subscription are accepted with a warning
        _      = add_notification(test, 'offer', 'uuid-2', AppleNotificationTypeV2.OFFER_REDEEMED, tx_info)
        result = platform_apple.ingest_notification(test.core, test.sql_conn, 'offer', NOW_UNIX_TS_MS)
        assert result.status == base.NotificationProcessingStatus.Processed, result.err_msg
        assert get_audit_logs(test, 'OFFER_REDEEMED_SUB_MISSING')[0].status == base.AuditStatus.Warning

        _      = add_notification(test, 'price', 'uuid-3', AppleNotificationTypeV2.PRICE_INCREASE, tx_info, subtype=AppleSubtype.PENDING)
        result = platform_apple.ingest_notification(test.core, test.sql_conn, 'price', NOW_UNIX_TS_MS)
        assert result.status == base.NotificationProcessingStatus.Processed, result.err_msg
        assert get_audit_logs(test, 'PRICE_INCREASE_WARNING_SUB_MISSING')[0].status == base.AuditStatus.Warning

def test_random_account_token_and_unexpected_errors_fail_cleanly(monkeypatch):
    with TestingContext(db_path='file:test_unexpected_errors_db?mode=memory&cache=shared', uri=True) as test:
        # NOTE: StoreKit clients that don't encode the user ID send a random UUID, its integer
        # value doesn't fit a user ID column
        random_token = '9f8e7d6c-5b4a-4392-8170-6f5e4d3c2b1a'
        assert platform_apple.user_id_from_app_account_token(random_token)                                    is None
        assert platform_apple.user_id_from_app_account_token(str(platform_apple.MAX_USER_ID + 1))             is None
        assert platform_apple.user_id_from_app_account_token(str(platform_apple.MAX_USER_ID))                 == platform_apple.MAX_USER_ID

        tx_info = make_tx_info('T1', 'T1', BASIC_PRODUCT_ID, NOW_UNIX_TS_MS + MONTH_UNIX_TS_MS, random_token)
        _       = add_notification(test, 'random-token', 'uuid-1', AppleNotificationTypeV2.SUBSCRIBED, tx_info, subtype=AppleSubtype.INITIAL_BUY)
        result  = platform_apple.ingest_notification(test.core, test.sql_conn, 'random-token', NOW_UNIX_TS_MS)
        assert result.status == base.NotificationProcessingStatus.Failed

        row = get_notification(test, result.notification_id)
        assert row.processing_status == base.NotificationProcessingStatus.Failed
        assert row.notification_uuid == 'uuid-1'
        audits = get_audit_logs(test, 'SUBSCRIBED_FAILURE_UNLINKABLE')
        assert len(audits)               == 1
        assert audits[0].status          == base.AuditStatus.Failure
        assert audits[0].notification_id == result.notification_id

        # NOTE: Errors outside of the backend's own error types still fail the delivery
        def broken_handler(ctx: platform_apple.HandlerContext):
            raise OverflowError('Python int too large to convert to SQLite INTEGER')
        monkeypatch.setattr(platform_apple, '_handle_test', broken_handler)

        _      = add_notification(test, 'test', 'uuid-2', AppleNotificationTypeV2.TEST, None)
        result = platform_apple.ingest_notification(test.core, test.sql_conn, 'test', NOW_UNIX_TS_MS)
        assert result.status == base.NotificationProcessingStatus.Failed
        assert 'OverflowError' in result.err_msg

        row = get_notification(test, result.notification_id)
        assert row.processing_status == base.NotificationProcessingStatus.Failed
        assert row.notification_type == 'TEST'
        audits = get_audit_logs(test, 'APPLE_NOTIFICATION_FAILURE')
        assert len(audits)               == 1
        assert audits[0].status          == base.AuditStatus.Failure
        assert audits[0].notification_id == result.notification_id

        response: werkzeug.test.TestResponse = test.flask_client.post(platform_apple.FLASK_ROUTE_NOTIFICATIONS_APPLE_V2, json={'signedPayload': 'test'})
        assert response.status_code == 500

def test_test_and_unsupported_notifications():
    with TestingContext(db_path='file:test_test_notification_db?mode=memory&cache=shared', uri=True) as test:
        _      = add_notification(test, 'test', 'uuid-1', AppleNotificationTypeV2.TEST, None)
        result = platform_apple.ingest_notification(test.core, test.sql_conn, 'test', NOW_UNIX_TS_MS)
        assert result.status            == base.NotificationProcessingStatus.Processed, result.err_msg
        assert result.notification_type == 'TEST'
        assert len(get_audit_logs(test, 'TEST_NOTIFICATION_RECEIVED')) == 1

        tx_info = make_tx_info('T1', 'T1', BASIC_PRODUCT_ID, NOW_UNIX_TS_MS)
        _       = add_notification(test, 'extended', 'uuid-2', AppleNotificationTypeV2.RENEWAL_EXTENDED, tx_info)
        result  = platform_apple.ingest_notification(test.core, test.sql_conn, 'extended', NOW_UNIX_TS_MS)
        assert result.status == base.NotificationProcessingStatus.Processed, result.err_msg
        assert get_audit_logs(test, 'UNHANDLED_NOTIFICATION_TYPE')[0].status == base.AuditStatus.Warning

def test_reconcile_pending_receipts():
    with TestingContext(db_path='file:test_reconcile_db?mode=memory&cache=shared', uri=True) as test:
        with base.SQLTransaction(test.sql_conn) as tx:
            not_visible = backend.add_apple_receipt_tx(tx, 'T-404', 1, 'receipt-404', NOW_UNIX_TS_MS)
            confirmed   = backend.add_apple_receipt_tx(tx, 'T-ok',  2, 'receipt-ok',  NOW_UNIX_TS_MS)
            mismatched  = backend.add_apple_receipt_tx(tx, 'T-bad', 3, 'receipt-bad', NOW_UNIX_TS_MS)
            errored     = backend.add_apple_receipt_tx(tx, 'T-500', 4, 'receipt-500', NOW_UNIX_TS_MS)

        test.verifier.transactions['upstream-ok']    = make_tx_info('T-ok', 'T-ok', BASIC_PRODUCT_ID, NOW_UNIX_TS_MS)
        test.verifier.transactions['upstream-other'] = make_tx_info('T-other', 'T-other', BASIC_PRODUCT_ID, NOW_UNIX_TS_MS)
        test.api_client.responses['T-ok']            = AppleTransactionInfoResponse(signedTransactionInfo='upstream-ok')
        test.api_client.responses['T-bad']           = AppleTransactionInfoResponse(signedTransactionInfo='upstream-other')
        test.api_client.responses['T-500']           = AppleAPIException(500)

        result = reconcile.reconcile_pending_receipts(test.core, test.sql_conn, NOW_UNIX_TS_MS + 1000)
        assert result.examined      == 4
        assert result.verified      == 1
        assert result.still_pending == 1
        assert result.failed        == 2
        assert test.api_client.calls == ['T-404', 'T-ok', 'T-bad', 'T-500']

        with base.SQLTransaction(test.sql_conn) as tx:
            receipts = {it.id: backend.get_apple_receipt_by_transaction_id_tx(tx, it.transaction_id) for it in [not_visible, confirmed, mismatched, errored]}
        assert receipts[not_visible.id].status                  == base.ReceiptStatus.PendingVerification
        assert receipts[not_visible.id].verification_attempts   == 1
        assert receipts[not_visible.id].last_attempt_unix_ts_ms == NOW_UNIX_TS_MS + 1000
        assert receipts[confirmed.id].status                    == base.ReceiptStatus.Verified
        assert receipts[mismatched.id].status                   == base.ReceiptStatus.FailedVerification
        assert receipts[errored.id].status                      == base.ReceiptStatus.FailedVerification
        assert len(get_audit_logs(test, 'APPLE_RECEIPT_VERIFIED'))            == 1
        assert len(get_audit_logs(test, 'APPLE_RECEIPT_VERIFICATION_FAILED')) == 2

        # NOTE: Only the receipt Apple couldn't see yet is retried, until it runs out of attempts
        result = reconcile.reconcile_pending_receipts(test.core, test.sql_conn, NOW_UNIX_TS_MS + 2000, max_attempts=2)
        assert result.examined      == 1
        assert result.still_pending == 1
        result = reconcile.reconcile_pending_receipts(test.core, test.sql_conn, NOW_UNIX_TS_MS + 3000, max_attempts=2)
        assert result.examined == 0

def test_reconcile_db_error_on_one_receipt_keeps_batch_going(monkeypatch):
    with TestingContext(db_path='file:test_reconcile_db_error_db?mode=memory&cache=shared', uri=True) as test:
        with base.SQLTransaction(test.sql_conn) as tx:
            locked    = backend.add_apple_receipt_tx(tx, 'T-locked', 1, 'receipt-locked', NOW_UNIX_TS_MS)
            confirmed = backend.add_apple_receipt_tx(tx, 'T-ok',     2, 'receipt-ok',     NOW_UNIX_TS_MS)

        test.verifier.transactions['upstream-ok'] = make_tx_info('T-ok', 'T-ok', BASIC_PRODUCT_ID, NOW_UNIX_TS_MS)
        test.api_client.responses['T-ok']         = AppleTransactionInfoResponse(signedTransactionInfo='upstream-ok')

        increment_attempt = backend.increment_apple_receipt_attempt_tx
        def increment_attempt_or_fail(tx: base.SQLTransaction, receipt_id: int, unix_ts_ms: int) -> int:
            if receipt_id == locked.id:
                raise sqlite3.OperationalError('database is locked')
            return increment_attempt(tx, receipt_id, unix_ts_ms)
        monkeypatch.setattr(backend, 'increment_apple_receipt_attempt_tx', increment_attempt_or_fail)

        result = reconcile.reconcile_pending_receipts(test.core, test.sql_conn, NOW_UNIX_TS_MS + 1000)
        assert result.examined      == 2
        assert result.still_pending == 1
        assert result.verified      == 1
        assert result.failed        == 0

        # NOTE: The receipt that hit the error was never sent upstream and is retried next run
        assert test.api_client.calls == ['T-ok']
        with base.SQLTransaction(test.sql_conn) as tx:
            locked_row    = backend.get_apple_receipt_by_transaction_id_tx(tx, 'T-locked')
            confirmed_row = backend.get_apple_receipt_by_transaction_id_tx(tx, 'T-ok')
        assert locked_row and confirmed_row
        assert locked_row.status                == base.ReceiptStatus.PendingVerification
        assert locked_row.verification_attempts == 0
        assert confirmed_row.id                 == confirmed.id
        assert confirmed_row.status             == base.ReceiptStatus.Verified

def test_scheduled_reconcile_runs_once_per_slot():
    with TestingContext(db_path='file:test_reconcile_slot_db?mode=memory&cache=shared', uri=True) as test:
        slot = base.round_unix_ts_ms_to_start_of_hour(NOW_UNIX_TS_MS)
        assert reconcile.run_scheduled_reconcile(test.core, test.sql_conn, slot) is not None

        # NOTE: Another worker waking up in the same hour backs off
        assert reconcile.run_scheduled_reconcile(test.core, test.sql_conn, slot + 1000) is None
        assert backend.get_runtime(test.sql_conn).last_reconcile_unix_ts_ms == slot

        assert reconcile.run_scheduled_reconcile(test.core, test.sql_conn, slot + base.MILLISECONDS_IN_HOUR) is not None

def test_server_routes():
    with TestingContext(db_path='file:test_server_routes_db?mode=memory&cache=shared', uri=True) as test:
        # NOTE: Apple webhook
        tx_info = make_tx_info('T1', 'T1', BASIC_PRODUCT_ID, base.unix_ts_ms_now() + MONTH_UNIX_TS_MS, platform_apple.app_account_token_from_user_id(42))
        _       = add_notification(test, 'subscribed', 'uuid-1', AppleNotificationTypeV2.SUBSCRIBED, tx_info)

        response: werkzeug.test.TestResponse = test.flask_client.post(platform_apple.FLASK_ROUTE_NOTIFICATIONS_APPLE_V2, json={'signedPayload': 'subscribed'})
        assert response.status_code == 200, response.data
        assert json.loads(response.data) == {'status': 'received'}

        response = test.flask_client.post(platform_apple.FLASK_ROUTE_NOTIFICATIONS_APPLE_V2, json={'signedPayload': 'subscribed'})
        assert response.status_code == 200, response.data

        response = test.flask_client.post(platform_apple.FLASK_ROUTE_NOTIFICATIONS_APPLE_V2, json={'signedPayload': 'forged'})
        assert response.status_code == 500

        response = test.flask_client.post(platform_apple.FLASK_ROUTE_NOTIFICATIONS_APPLE_V2, json={'payload': 'subscribed'})
        assert response.status_code == 400

        response = test.flask_client.post(platform_apple.FLASK_ROUTE_NOTIFICATIONS_APPLE_V2, data='{not json', content_type='application/json')
        assert response.status_code == 400

        # NOTE: Active subscription lookup
        response = test.flask_client.get('/subscriptions/user/42')
        assert response.status_code == 200, response.data
        response_json = json.loads(response.data)
        assert response_json['status']                       == 200
        assert response_json['result']['plan']['product_id'] == BASIC_PRODUCT_ID

        response = test.flask_client.get('/subscriptions/user/1000')
        assert response.status_code == 404

        # NOTE: Lifecycle routes return the active subscription with its plan
        response = test.flask_client.post(server.ROUTE_SUBSCRIBE_FREE_PLAN, json={'user_id': '7'})
        assert response.status_code == 200, response.data
        assert json.loads(response.data)['result']['plan']['name'] == FREE_PLAN_NAME

        response = test.flask_client.post(server.ROUTE_SUBSCRIBE_TO_PLAN, json={'user_id': 7, 'plan_id': test.catalog.pro_id})
        assert response.status_code == 200, response.data
        result_json = json.loads(response.data)['result']
        assert result_json['plan_id']                               == test.catalog.pro_id
        assert {it['slug'] for it in result_json['plan']['entitlements']} == {'messages', 'exports'}

        response = test.flask_client.post(server.ROUTE_SUBSCRIBE_TO_PLAN, json={'user_id': 7, 'plan_id': 9999})
        assert response.status_code == 400

        response = test.flask_client.post(server.ROUTE_SUBSCRIBE_TO_PLAN, json={'user_id': 7})
        assert response.status_code == 400

        response = test.flask_client.post(server.ROUTE_SUBSCRIBE_FREE_PLAN, json=[7])
        assert response.status_code == 400

        # NOTE: Purchase activation
        token    = platform_apple.app_account_token_from_user_id(9)
        receipt  = add_receipt(test, make_tx_info('P1', 'P1', PRO_PRODUCT_ID, base.unix_ts_ms_now() + MONTH_UNIX_TS_MS, token))
        response = test.flask_client.post(platform_apple.FLASK_ROUTE_VERIFY_PURCHASE, json={'receipt': receipt, 'user_id': 9})
        assert response.status_code == 200, response.data
        result_json = json.loads(response.data)['result']
        assert result_json['status']             == base.SubscriptionStatus.Active.value
        assert result_json['original_tx_id']     == 'P1'
        assert result_json['plan']['product_id'] == PRO_PRODUCT_ID

        response = test.flask_client.post(platform_apple.FLASK_ROUTE_VERIFY_PURCHASE, json={'receipt': receipt, 'user_id': 10})
        assert response.status_code == 400

        # NOTE: Plans
        response = test.flask_client.get(server.ROUTE_GET_ALL_PLANS)
        assert response.status_code == 200, response.data
        assert [it['name'] for it in json.loads(response.data)['result']] == [FREE_PLAN_NAME, 'Basic', 'Pro']

        response = test.flask_client.get(f'/v1/plans/{test.catalog.basic_id}')
        assert response.status_code == 200, response.data
        assert json.loads(response.data)['result']['features'] == [{'name': 'No ads', 'order': 2}]

        response = test.flask_client.get('/v1/plans/9999')
        assert response.status_code == 404
