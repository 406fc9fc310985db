'''
This file is the HTTP layer which declares the functions that serve the client facing routes of the
subscription backend. These routes are registered onto a Flask application which enable the
endpoints for the server. The App Store facing routes are registered separately by
platform_apple.py onto the same application.

The role of this layer is to intercept and sanitize the HTTP request, extracting the JSON into
valid, strongly typed (to Python's best ability) types that can be passed into the backend.

The backend is responsible for further validation of the request such as consistency against the
state of the DB. If successful the result is returned back to this layer and piped back to the user
in the HTTP response.
'''

import flask
import typing
import json
import dataclasses

import base
import backend
import plans
import subscriptions

@dataclasses.dataclass
class GetJSONFromFlaskRequest:
    json:    base.JSONObject = dataclasses.field(default_factory=dict)
    err_msg: str             = ''

# Keys stored in the flask app config dictionary that can be retrieved within
# a request to get the path to the SQLite DB to load and use for that request.
CONFIG_DB_PATH_KEY            = 'sub_backend_db_path'
CONFIG_DB_PATH_IS_URI_KEY     = 'sub_backend_db_path_is_uri'
CONFIG_FREE_PLAN_NAME_KEY     = 'sub_backend_free_plan_name'

# Name of the endpoints exposed on the server
ROUTE_SUBSCRIBE_FREE_PLAN     = '/subscriptions/subscribe-free-plan'
ROUTE_SUBSCRIBE_TO_PLAN       = '/subscriptions/subscribe-to-plan'
ROUTE_GET_USER_SUBSCRIPTION   = '/subscriptions/user/<int:user_id>'
ROUTE_GET_ALL_PLANS           = '/v1/all-plans'
ROUTE_GET_PLAN                = '/v1/plans/<int:plan_id>'

# The object containing routes that you register onto a Flask app to turn it
# into an app that accepts subscription backend client requests.
flask_blueprint = flask.Blueprint('sub-backend-blueprint', __name__)

def html_bad_response(http_status: int, msg: str | list[str]) -> flask.Response:
    result        = flask.jsonify({ 'status': http_status, 'msg': msg})
    result.status = http_status
    return result

def html_good_response(dict_result: typing.Any) -> flask.Response:
    result = flask.jsonify({ 'status': 200, 'result': dict_result})
    return result

def html_response_from_backend_error(e: base.BackendError) -> flask.Response:
    # NOTE: Catalog problems are reported to the caller the same as bad input, the request can't
    # be served either way and the operator is alerted through the logs
    if isinstance(e, (base.ValidationError, base.VerificationError, base.ConfigurationError)):
        result = html_bad_response(400, e.msg)
    elif isinstance(e, base.DataInconsistencyError):
        result = html_bad_response(404, e.msg)
    else:
        result = html_bad_response(500, e.msg)
    return result

def get_json_from_flask_request(request: flask.Request) -> GetJSONFromFlaskRequest:
    result: GetJSONFromFlaskRequest = GetJSONFromFlaskRequest()
    try:
        json_value = typing.cast(typing.Any, json.loads(request.data))
        if isinstance(json_value, dict):
            result.json = typing.cast(base.JSONObject, json_value)
        else:
            result.err_msg = 'JSON body must be an object'
    except ValueError as e:
        result.err_msg = f'JSON failed to be parsed: {e}'
    return result

def open_db_from_flask_request_context(flask_app: flask.Flask) -> backend.OpenDBAtPath:
    assert CONFIG_DB_PATH_KEY        in flask_app.config
    assert CONFIG_DB_PATH_IS_URI_KEY in flask_app.config
    db_path        = typing.cast(str,  flask_app.config[CONFIG_DB_PATH_KEY])
    db_path_is_uri = typing.cast(bool, flask_app.config[CONFIG_DB_PATH_IS_URI_KEY])
    result         = backend.OpenDBAtPath(db_path, db_path_is_uri)
    return result

def init(testing_mode: bool, db_path: str, db_path_is_uri: bool, free_plan_name: str) -> flask.Flask:
    result                                   = flask.Flask(__name__)
    result.config['TESTING']                 = testing_mode
    result.config[CONFIG_DB_PATH_KEY]        = db_path
    result.config[CONFIG_DB_PATH_IS_URI_KEY] = db_path_is_uri
    result.config[CONFIG_FREE_PLAN_NAME_KEY] = free_plan_name
    result.register_blueprint(flask_blueprint)
    return result

@flask_blueprint.route(ROUTE_SUBSCRIBE_FREE_PLAN, methods=['POST'])
def subscribe_free_plan() -> flask.Response:
    # Get JSON from request
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    # Extract values from JSON
    err          = base.ErrorSink()
    user_id: int = base.json_dict_require_int_or_int_str(get.json, 'user_id', err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    free_plan_name = typing.cast(str, flask.current_app.config[CONFIG_FREE_PLAN_NAME_KEY])
    now            = base.unix_ts_ms_now()
    with open_db_from_flask_request_context(flask.current_app) as db:
        try:
            _      = subscriptions.subscribe_free_plan(db.sql_conn, user_id, free_plan_name, now)
            active = subscriptions.get_active_subscription(db.sql_conn, user_id, now)
        except base.BackendError as e:
            return html_response_from_backend_error(e)

    result = html_good_response(active)
    return result

@flask_blueprint.route(ROUTE_SUBSCRIBE_TO_PLAN, methods=['POST'])
def subscribe_to_plan() -> flask.Response:
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    err          = base.ErrorSink()
    user_id: int = base.json_dict_require_int_or_int_str(get.json, 'user_id', err)
    plan_id: int = base.json_dict_require_int_or_int_str(get.json, 'plan_id', err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    free_plan_name = typing.cast(str, flask.current_app.config[CONFIG_FREE_PLAN_NAME_KEY])
    now            = base.unix_ts_ms_now()
    with open_db_from_flask_request_context(flask.current_app) as db:
        try:
            _      = subscriptions.subscribe_to_plan(db.sql_conn, user_id, plan_id, free_plan_name, now)
            active = subscriptions.get_active_subscription(db.sql_conn, user_id, now)
        except base.BackendError as e:
            return html_response_from_backend_error(e)

    result = html_good_response(active)
    return result

@flask_blueprint.route(ROUTE_GET_USER_SUBSCRIPTION, methods=['GET'])
def get_user_subscription(user_id: int) -> flask.Response:
    with open_db_from_flask_request_context(flask.current_app) as db:
        try:
            active = subscriptions.get_active_subscription(db.sql_conn, user_id, base.unix_ts_ms_now())
        except base.BackendError as e:
            return html_response_from_backend_error(e)

    if active is None:
        return html_bad_response(404, f'User {user_id} has no active subscription')
    result = html_good_response(active)
    return result

@flask_blueprint.route(ROUTE_GET_ALL_PLANS, methods=['GET'])
def get_all_plans() -> flask.Response:
    with open_db_from_flask_request_context(flask.current_app) as db:
        try:
            details = plans.get_all_plan_details(db.sql_conn, base.unix_ts_ms_now())
        except base.BackendError as e:
            return html_response_from_backend_error(e)

    result = html_good_response(details)
    return result

@flask_blueprint.route(ROUTE_GET_PLAN, methods=['GET'])
def get_plan(plan_id: int) -> flask.Response:
    with open_db_from_flask_request_context(flask.current_app) as db:
        try:
            detail = plans.get_plan_detail(db.sql_conn, plan_id, base.unix_ts_ms_now())
        except base.BackendError as e:
            return html_response_from_backend_error(e)

    if detail is None:
        return html_bad_response(404, f'Plan {plan_id} does not exist')
    result = html_good_response(detail)
    return result
