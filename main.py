'''
Main entry point for the subscription backend. This runs the necessary setup code like initialising
the DB and reading startup arguments before handing over control-flow to Flask.

This application has options that must be specified as environment variables (or an .INI file whose
path is given by an environment variable) because this application runs directly as a flask app (in
a dev environment) and it also can be served over UWSGI for a production use-case where there's no
way to forward command line arguments to the underlying application.
'''

import pathlib
import os
import flask
import threading
import signal
import types
import logging
import logging.handlers
import configparser
import sys
import dataclasses
import traceback

import base
import backend
import plans
import platform_apple
import reconcile
import server
import subscriptions

log                                                     = logging.Logger('MAIN')
webhook_loggers: list[base.AsyncAlertWebhookLogHandler] = []

@dataclasses.dataclass
class AlertWebhook:
    enabled: bool = False
    url:     str  = ''
    name:    str  = ''

@dataclasses.dataclass
class ParsedArgs:
    ini_path:                str                = ''
    db_path:                 str                = ''
    db_path_is_uri:          bool               = False
    log_path:                str                = ''
    print_tables:            bool               = False
    unsafe_logging:          bool               = False
    free_plan_name:          str                = 'Free Plan'
    with_reconcile:          bool               = True

    alert_webhooks:          list[AlertWebhook] = dataclasses.field(default_factory=list)

    apple_key_id:            str                = ''
    apple_issuer_id:         str                = ''
    apple_bundle_id:         str                = ''
    apple_key_path:          str                = ''
    apple_root_cert_paths:   list[str]          = dataclasses.field(default_factory=list)
    apple_key:               bytes              = b''
    apple_root_certs:        list[bytes]        = dataclasses.field(default_factory=list)
    apple_sandbox_env:       bool               = False
    apple_production_app_id: int | None         = None

def signal_handler(sig: int, _frame: types.FrameType | None):
    global stop_reconcile_thread

    # NOTE: Wake up the thread and set the flag to terminate it
    stop_reconcile_thread = True
    reconcile_thread_event.set()

    # NOTE: Unregister handler and resume the default handler by re-raising it
    _ = signal.signal(sig, signal.SIG_DFL)
    signal.raise_signal(sig)

def reconcile_thread_entry_point(core: platform_apple.Core, db_path: str, db_path_is_uri: bool):
    global stop_reconcile_thread
    while not stop_reconcile_thread:
        start_unix_ts_ms:     int   = base.unix_ts_ms_now()
        next_hour_unix_ts_ms: int   = base.round_unix_ts_ms_to_next_hour(start_unix_ts_ms + 1)
        sleep_time_s:         float = (next_hour_unix_ts_ms - start_unix_ts_ms) / 1000.0

        # Sleep on the event until the hour has elapsed, or, we get woken up by SIG handler
        while sleep_time_s > 0 and not stop_reconcile_thread:
            assert sleep_time_s <= base.SECONDS_IN_HOUR
            log.info(f'Sleeping for {base.format_seconds(sleep_time_s)} to reconcile pending receipts at {base.readable_unix_ts_ms(next_hour_unix_ts_ms)}')
            _            = reconcile_thread_event.wait(timeout=sleep_time_s)
            sleep_time_s = (next_hour_unix_ts_ms - base.unix_ts_ms_now()) / 1000.0

        if stop_reconcile_thread:
            break

        # NOTE: Every worker process wakes up at the top of the hour, exactly one of them claims the
        # slot and does the work. The rest no-op.
        try:
            with backend.OpenDBAtPath(db_path, db_path_is_uri) as db:
                result = reconcile.run_scheduled_reconcile(core, db.sql_conn, next_hour_unix_ts_ms)
            if result and (result.verified or result.failed):
                log_line = f'Receipt reconciliation for {base.readable_unix_ts_ms(next_hour_unix_ts_ms)}: verified/pending/failed={result.verified}/{result.still_pending}/{result.failed}'
                for it in webhook_loggers:
                    it.emit_text(log_line)
        except Exception:
            log.error(f'Receipt reconciliation failed: {traceback.format_exc()}')

def parse_args(err: base.ErrorSink) -> ParsedArgs:
    # NOTE: Parse .INI file if present and get arguments for it
    result          = ParsedArgs()
    result.ini_path = os.getenv('SUB_BACKEND_INI_PATH', '')
    if len(result.ini_path) > 0:
        if not pathlib.Path(result.ini_path).exists():
            log.error(f'.INI config file "{result.ini_path}", was specified but does not exist/is not readable')
            sys.exit(1)

        ini_parser                              = configparser.ConfigParser()
        _                                       = ini_parser.read(filenames=result.ini_path)

        if 'base' in ini_parser:
            base_section: configparser.SectionProxy = ini_parser['base']
            result.db_path                          = base_section.get(option='db_path',              fallback='')
            result.db_path_is_uri                   = base_section.getboolean(option='db_path_is_uri', fallback=False)
            result.log_path                         = base_section.get(option='log_path',             fallback='')
            result.print_tables                     = base_section.getboolean(option='print_tables',   fallback=False)
            result.unsafe_logging                   = base_section.getboolean(option='unsafe_logging', fallback=False)
            result.free_plan_name                   = base_section.get(option='free_plan_name',       fallback=result.free_plan_name)
            result.with_reconcile                   = base_section.getboolean(option='with_reconcile', fallback=True)

        webhook_index = 0
        while True:
            webhook_label: str = f'alert_webhook.{webhook_index}'
            if not ini_parser.has_section(webhook_label):
                break

            webhook_section: configparser.SectionProxy = ini_parser[webhook_label]
            webhook_url:     str | None                = webhook_section.get('url')
            webhook_name:    str | None                = webhook_section.get('name')
            webhook_enabled: bool                      = webhook_section.getboolean('enabled', fallback=True)

            if webhook_name is None:
                err.msg_list.append(f'Failed to parse webhook section {webhook_label}, missing \'name\'')
            if webhook_url is None:
                err.msg_list.append(f'Failed to parse webhook section {webhook_label}, missing \'url\'')

            webhook_index += 1
            if webhook_name is not None and webhook_url is not None:
                result.alert_webhooks.append(AlertWebhook(name=webhook_name, url=webhook_url, enabled=webhook_enabled))

        if 'apple' in ini_parser:
            apple_section: configparser.SectionProxy = ini_parser['apple']
            result.apple_key_id                      = apple_section.get(option='key_id',           fallback='')
            result.apple_issuer_id                   = apple_section.get(option='issuer_id',        fallback='')
            result.apple_bundle_id                   = apple_section.get(option='bundle_id',        fallback='')
            result.apple_key_path                    = apple_section.get(option='private_key_path', fallback='')
            result.apple_root_cert_paths             = apple_section.get(option='root_cert_paths',  fallback='').split()
            result.apple_sandbox_env                 = apple_section.getboolean(option='sandbox',   fallback=False)
            result.apple_production_app_id           = apple_section.getint(option='app_apple_id',  fallback=None)

    # NOTE: Get arguments from environment, they override .INI values if specified
    result.db_path                 = os.getenv('SUB_BACKEND_DB_PATH',                         result.db_path)
    result.db_path_is_uri          = base.os_get_boolean_env('SUB_BACKEND_DB_PATH_IS_URI',    result.db_path_is_uri)
    result.log_path                = os.getenv('SUB_BACKEND_LOG_PATH',                        result.log_path)
    result.print_tables            = base.os_get_boolean_env('SUB_BACKEND_PRINT_TABLES',      result.print_tables)
    result.unsafe_logging          = base.os_get_boolean_env('SUB_BACKEND_UNSAFE_LOGGING',    result.unsafe_logging)
    result.free_plan_name          = os.getenv('SUB_BACKEND_FREE_PLAN_NAME',                  result.free_plan_name)
    result.with_reconcile          = base.os_get_boolean_env('SUB_BACKEND_WITH_RECONCILE',    result.with_reconcile)
    result.apple_key_id            = os.getenv('SUB_BACKEND_APPLE_KEY_ID',                    result.apple_key_id)
    result.apple_issuer_id         = os.getenv('SUB_BACKEND_APPLE_ISSUER_ID',                 result.apple_issuer_id)
    result.apple_bundle_id         = os.getenv('SUB_BACKEND_APPLE_BUNDLE_ID',                 result.apple_bundle_id)
    result.apple_key_path          = os.getenv('SUB_BACKEND_APPLE_PRIVATE_KEY_PATH',          result.apple_key_path)
    result.apple_sandbox_env       = base.os_get_boolean_env('SUB_BACKEND_APPLE_SANDBOX',     result.apple_sandbox_env)

    root_cert_paths_env = os.getenv('SUB_BACKEND_APPLE_ROOT_CERT_PATHS')
    if root_cert_paths_env is not None:
        result.apple_root_cert_paths = root_cert_paths_env.split(os.pathsep)

    app_apple_id_env = os.getenv('SUB_BACKEND_APPLE_APP_APPLE_ID')
    if app_apple_id_env is not None:
        try:
            result.apple_production_app_id = int(app_apple_id_env)
        except ValueError as e:
            err.msg_list.append(f'SUB_BACKEND_APPLE_APP_APPLE_ID was not an integer: {e}')

    if len(result.db_path) == 0:
        err.msg_list.append('db_path was not specified')
    if len(result.free_plan_name) == 0:
        err.msg_list.append('free_plan_name must not be empty')
    if len(result.apple_key_id) == 0:
        err.msg_list.append('Apple key_id was not specified')
    if len(result.apple_issuer_id) == 0:
        err.msg_list.append('Apple issuer_id was not specified')
    if len(result.apple_bundle_id) == 0:
        err.msg_list.append('Apple bundle_id was not specified')
    if len(result.apple_key_path) == 0:
        err.msg_list.append('Apple private_key_path was not specified')
    if len(result.apple_root_cert_paths) == 0:
        err.msg_list.append('Apple root_cert_paths was not specified')
    if not result.apple_sandbox_env and result.apple_production_app_id is None:
        err.msg_list.append('Apple was configured in production mode (e.g. not sandbox mode) but the app_apple_id was not specified')

    # NOTE: Root certificates and the signing key are read once at startup
    if not err.has():
        try:
            result.apple_key        = pathlib.Path(result.apple_key_path).read_bytes()
            result.apple_root_certs = [pathlib.Path(it).read_bytes() for it in result.apple_root_cert_paths]
        except OSError as e:
            err.msg_list.append(f'Unable to read Apple key or root certificate: {e}')

    if len(result.log_path) == 0:
        result.log_path = 'sub-backend.log'

    return result

def entry_point() -> flask.Flask:
    all_loggers: list[logging.Logger] = [log, backend.log, plans.log, platform_apple.log, reconcile.log, subscriptions.log]

    log_formatter  = base.LogFormatter('%(asctime)s %(levelname)s %(name)s %(message)s')
    console_logger = logging.StreamHandler()
    console_logger.setFormatter(log_formatter)
    for it in all_loggers:
        it.addHandler(console_logger)

    # NOTE: Parse arguments from .INI if present and environment variables, then setup global variables
    err                     = base.ErrorSink()
    parsed_args: ParsedArgs = parse_args(err)
    base.UNSAFE_LOGGING     = parsed_args.unsafe_logging
    base.DB_PATH            = parsed_args.db_path
    base.DB_PATH_IS_URI     = parsed_args.db_path_is_uri
    if err.has():
        log.error('Failed to startup, invalid configuration options:\n  ' + err.build())
        sys.exit(1)

    # NOTE: Setup file logger
    file_logger = logging.handlers.RotatingFileHandler(filename=parsed_args.log_path, maxBytes=64 * 1024 * 1024, backupCount=2, encoding='utf-8')
    file_logger.setFormatter(log_formatter)
    for it in all_loggers:
        it.addHandler(file_logger)

    # NOTE: Equip the alert webhooks if configured
    for webhook in parsed_args.alert_webhooks:
        if webhook.enabled:
            webhook_logger = base.AsyncAlertWebhookLogHandler(webhook_url=webhook.url, display_name=webhook.name)
            webhook_logger.setFormatter(log_formatter)
            webhook_loggers.append(webhook_logger)
            for it in all_loggers:
                it.addHandler(webhook_logger)

    # NOTE: Ensure the path is setup for writing the database
    if not parsed_args.db_path_is_uri:
        try:
            pathlib.Path(parsed_args.db_path).parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log.error(f'Failed to create directory for {parsed_args.db_path}: {e}')
            sys.exit(1)

    # NOTE: Open the DB (create tables if necessary)
    db: backend.SetupDBResult = backend.setup_db(path=parsed_args.db_path, uri=parsed_args.db_path_is_uri, err=err)
    if err.has() or db.sql_conn is None:
        log.error(f'Failed to setup DB:\n  {err.build()}')
        sys.exit(1)

    # NOTE: Dump some startup diagnostics
    info_string: str = backend.db_info_string(sql_conn=db.sql_conn, db_path=db.path, err=err)
    if err.has():
        log.error(err.build())
        sys.exit(1)

    if not backend.verify_db(db.sql_conn, err):
        log.warning(f'DB failed consistency checks on startup:\n  {err.build()}')
        err.msg_list.clear()

    # NOTE: Handle printing of the DB to standard out if requested
    if parsed_args.print_tables:
        base.print_db_to_stdout(db.sql_conn)
        sys.exit(1)

    startup_log  = '\n'
    startup_log += f'Subscription Backend\n{info_string}\n'
    startup_log += f'  Features:\n'
    if len(parsed_args.ini_path) > 0:
        startup_log += f'    Config .INI file loaded: {parsed_args.ini_path}\n'
    label        = ' (URI)' if parsed_args.db_path_is_uri else ''
    startup_log += f'    DB loaded from: {db.path}{label}\n'
    startup_log += f'    Logging to: {parsed_args.log_path}\n'
    startup_log += f'    Free plan: {parsed_args.free_plan_name}\n'
    if parsed_args.unsafe_logging:
        startup_log += f'    Unsafe logging enabled (this must NOT be used in production)\n'
    label        = 'Sandbox' if parsed_args.apple_sandbox_env else 'Production'
    startup_log += f'    Platform: {label} Apple App Store notification handling enabled\n'
    if parsed_args.with_reconcile:
        startup_log += f'    Hourly receipt reconciliation enabled\n'
    for it in parsed_args.alert_webhooks:
        if it.enabled:
            startup_log += f'    Alert Webhook: Enabled (display name: {it.name})\n'

    log.info(startup_log)
    for it in webhook_loggers:
        it.emit_text(f'Starting up instance: {startup_log}')

    try:
        core: platform_apple.Core = platform_apple.init(key_bytes      = parsed_args.apple_key,
                                                        key_id         = parsed_args.apple_key_id,
                                                        issuer_id      = parsed_args.apple_issuer_id,
                                                        bundle_id      = parsed_args.apple_bundle_id,
                                                        root_certs     = parsed_args.apple_root_certs,
                                                        sandbox        = parsed_args.apple_sandbox_env,
                                                        app_apple_id   = None if parsed_args.apple_sandbox_env else parsed_args.apple_production_app_id,
                                                        free_plan_name = parsed_args.free_plan_name)
    except base.ConfigurationError as e:
        log.error(f'Failed to initialise Apple integration: {e.msg}')
        sys.exit(1)

    # NOTE: Running the application just in Flask (e.g. local development) we need a way to signal
    # to the long-running reconcile thread to terminate itself, otherwise the application hangs on
    # exit as the thread is never terminated. Under UWSGI this requires `py-call-osafterfork` for
    # our handlers to be respected.
    _ = signal.signal(signal.SIGINT, signal_handler)  # Ctrl+C
    _ = signal.signal(signal.SIGTERM, signal_handler) # Terminate
    _ = signal.signal(signal.SIGQUIT, signal_handler) # Quit

    # NOTE: Every process serving the app runs this thread. They race at the top of each hour and
    # the slot claim in the DB lets exactly one of them do the reconciliation.
    if parsed_args.with_reconcile:
        thread = threading.Thread(target=reconcile_thread_entry_point, args=(core, db.path, parsed_args.db_path_is_uri), daemon=True)
        thread.start()

    result: flask.Flask = server.init(testing_mode   = False,
                                      db_path        = db.path,
                                      db_path_is_uri = parsed_args.db_path_is_uri,
                                      free_plan_name = parsed_args.free_plan_name)

    # NOTE: Add flask to our global logger
    result.logger.addHandler(console_logger)
    result.logger.addHandler(file_logger)
    for it in webhook_loggers:
        result.logger.addHandler(it)

    # NOTE: Enable the Apple App Store routes on the server, Apple will contact the endpoint when a
    # notification is generated
    platform_apple.equip_flask_routes(core, result)

    # The flask runner/UWSGI takes over from here and runs the application for us across multiple
    # processes if necessary. Each request we receive will open their own connection to the DB.
    db.sql_conn.close()
    return result

# Flask entry point
stop_reconcile_thread  = False
reconcile_thread_event = threading.Event()
flask_app: flask.Flask = entry_point()
