'''
Background confirmation of receipts that were activated on local verification alone. Every
scheduled run picks up a batch of receipts still pending verification, asks the App Store Server
API for the transaction and verifies what it returns.

Apple can take a while before a freshly purchased transaction is visible through the API, a 404
leaves the receipt pending for the next run. With the job running hourly the default attempt cap
gives up after roughly 3 days.
'''

import dataclasses
import logging
import sqlite3
import traceback

from appstoreserverlibrary.api_client import (
    APIException as AppleAPIException,
)

import base
import backend
import platform_apple

log = logging.Logger('RECONCILE')

DEFAULT_MAX_ATTEMPTS: int = 72
DEFAULT_BATCH_SIZE:   int = 50

@dataclasses.dataclass
class ReconcileResult:
    examined:      int = 0
    verified:      int = 0
    still_pending: int = 0
    failed:        int = 0

def verify_receipt_upstream(core: platform_apple.Core, receipt: backend.AppleReceiptRow):
    '''
    Confirm the receipt's transaction with the App Store Server API. Raises
    `base.TransientUpstreamError` if Apple does not know the transaction (yet) and
    `base.VerificationError` if the returned transaction can't be trusted or doesn't match.
    '''
    try:
        response = core.app_store_server_api_client.get_transaction_info(receipt.transaction_id)
    except AppleAPIException as e:
        if e.http_status_code == 404:
            raise base.TransientUpstreamError(f'Transaction {receipt.transaction_id} not found (404)', user_id=receipt.user_id) from e
        raise

    if not response.signedTransactionInfo:
        raise base.VerificationError(f'Transaction {receipt.transaction_id} response is missing the signed transaction info', user_id=receipt.user_id)

    tx_info = platform_apple.verify_signed_transaction(core, response.signedTransactionInfo)
    if tx_info.transactionId != receipt.transaction_id:
        raise base.VerificationError(f'Transaction {receipt.transaction_id} response was for a different transaction ({tx_info.transactionId})', user_id=receipt.user_id)

def reconcile_pending_receipts(core:         platform_apple.Core,
                               sql_conn:     sqlite3.Connection,
                               unix_ts_ms:   int,
                               max_attempts: int = DEFAULT_MAX_ATTEMPTS,
                               batch_size:   int = DEFAULT_BATCH_SIZE) -> ReconcileResult:
    result = ReconcileResult()
    with base.SQLTransaction(sql_conn) as tx:
        receipts = backend.get_pending_apple_receipts_tx(tx, max_attempts=max_attempts, limit=batch_size)

    if len(receipts) == 0:
        log.info('No pending receipts to verify')
        return result

    log.info(f'Found {len(receipts)} receipt(s) to verify')
    for receipt in receipts:
        result.examined += 1

        # NOTE: Count the attempt before going to the network so that a crash mid-request still
        # consumes one of the receipt's attempts
        try:
            with base.SQLTransaction(sql_conn) as tx:
                attempts = backend.increment_apple_receipt_attempt_tx(tx, receipt.id, unix_ts_ms)
        except sqlite3.Error:
            # NOTE: Receipt is left untouched and stays pending, move onto the rest of the batch
            result.still_pending += 1
            log.error(f'Failed to record verification attempt for receipt {receipt.id}, skipping: {traceback.format_exc()}')
            continue

        new_status: base.ReceiptStatus | None = None
        fail_msg:   str                       = ''
        try:
            verify_receipt_upstream(core, receipt)
            new_status = base.ReceiptStatus.Verified
        except base.TransientUpstreamError as e:
            result.still_pending += 1
            log.warning(f'{e.msg}, will retry on the next run (attempt {attempts}/{max_attempts})')
        except base.BackendError as e:
            new_status = base.ReceiptStatus.FailedVerification
            fail_msg   = e.msg
        except AppleAPIException as e:
            new_status = base.ReceiptStatus.FailedVerification
            fail_msg   = f'App Store Server API error (HTTP {e.http_status_code}, {e.api_error}): {e.error_message}'
        except Exception:
            # NOTE: Transport errors (DNS, TLS, timeouts) are not wrapped by the API client
            new_status = base.ReceiptStatus.FailedVerification
            fail_msg   = f'Unrecoverable error: {traceback.format_exc()}'

        if new_status is None:
            continue

        try:
            with base.SQLTransaction(sql_conn) as tx:
                _ = backend.set_apple_receipt_status_tx(tx, receipt.id, new_status, unix_ts_ms)
                if new_status == base.ReceiptStatus.Verified:
                    _ = backend.add_audit_log_tx(tx         = tx,
                                                 event      = 'APPLE_RECEIPT_VERIFIED',
                                                 status     = base.AuditStatus.Success,
                                                 message    = f'Verified transaction {receipt.transaction_id} with the App Store',
                                                 unix_ts_ms = unix_ts_ms,
                                                 details    = {'receipt_id': receipt.id, 'attempts': attempts},
                                                 user_id    = receipt.user_id)
                else:
                    _ = backend.add_audit_log_tx(tx         = tx,
                                                 event      = 'APPLE_RECEIPT_VERIFICATION_FAILED',
                                                 status     = base.AuditStatus.Failure,
                                                 message    = f'Failed to verify transaction {receipt.transaction_id}: {fail_msg}',
                                                 unix_ts_ms = unix_ts_ms,
                                                 details    = {'receipt_id': receipt.id, 'attempts': attempts},
                                                 user_id    = receipt.user_id)
        except sqlite3.Error:
            result.still_pending += 1
            log.error(f'Failed to store the outcome for receipt {receipt.id}, it stays pending: {traceback.format_exc()}')
            continue

        if new_status == base.ReceiptStatus.Verified:
            result.verified += 1
        else:
            result.failed += 1

    log.info(f'Receipt reconciliation complete (examined={result.examined}, verified={result.verified}, pending={result.still_pending}, failed={result.failed})')
    return result

def run_scheduled_reconcile(core: platform_apple.Core, sql_conn: sqlite3.Connection, unix_ts_ms: int) -> ReconcileResult | None:
    '''
    Run the reconciliation for the hourly slot containing `unix_ts_ms` if no other worker process
    already claimed it. Returns None when the slot was already taken.
    '''
    slot_unix_ts_ms = base.round_unix_ts_ms_to_start_of_hour(unix_ts_ms)
    claim           = backend.claim_reconcile_slot(sql_conn, slot_unix_ts_ms)
    result          = None
    if not claim.already_done_by_someone_else:
        result = reconcile_pending_receipts(core, sql_conn, unix_ts_ms)
    return result
