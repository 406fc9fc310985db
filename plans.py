'''
Plan catalog resolution. A plan can name a parent plan it inherits from, the effective features and
entitlements of a plan are its ancestors' merged top-down with the plan's own taking precedence.
Features are keyed by feature ID and entitlements by their slug, so a child re-linking an
entitlement with a different `limit_override` replaces the parent's limit.
'''

import dataclasses
import logging
import sqlite3

import base
import backend

log = logging.Logger('PLANS')

@dataclasses.dataclass
class ResolvedEntitlement:
    name:         str                     = ''
    slug:         str                     = ''
    is_metered:   bool                    = False
    limit:        int | None              = None  # None means unlimited
    reset_period: base.ResetPeriod | None = None

@dataclasses.dataclass
class ResolvedPlanAttributes:
    features:     dict[int, backend.FeatureRow]  = dataclasses.field(default_factory=dict)
    entitlements: dict[str, ResolvedEntitlement] = dataclasses.field(default_factory=dict)

def resolve_plan(plan:       backend.PlanRow,
                 plan_index: dict[int, backend.PlanRow],
                 cache:      dict[int, ResolvedPlanAttributes],
                 visiting:   set[int] | None = None) -> ResolvedPlanAttributes:
    '''
    Resolve the effective attributes of `plan`. `plan_index` is the catalog keyed by plan ID (see
    `backend.get_plan_catalog_tx`). `cache` memoises results across calls so resolving the whole
    catalog touches each plan once; callers should share it for the duration of one request.

    Raises `base.ConfigurationError` when the inheritance chain loops back on itself. A parent ID
    that is not in the catalog is logged and treated as if the plan had no parent.
    '''
    if plan.id in cache:
        return cache[plan.id]

    if visiting is None:
        visiting = set()
    if plan.id in visiting:
        raise base.ConfigurationError(f'Plan catalog has an inheritance cycle through plan {plan.id} ({plan.name})')
    visiting.add(plan.id)

    result = ResolvedPlanAttributes()
    if plan.inherit_from_id is not None:
        parent = plan_index.get(plan.inherit_from_id)
        if parent:
            parent_attribs      = resolve_plan(parent, plan_index, cache, visiting)
            result.features     = dict(parent_attribs.features)
            result.entitlements = dict(parent_attribs.entitlements)
        else:
            log.warning(f'Plan {plan.id} ({plan.name}) inherits from plan {plan.inherit_from_id} which does not exist, ignoring parent')

    for feature in plan.features:
        result.features[feature.id] = feature

    for link in plan.entitlement_links:
        entitlement                           = link.entitlement
        result.entitlements[entitlement.slug] = ResolvedEntitlement(name         = entitlement.name,
                                                                     slug         = entitlement.slug,
                                                                     is_metered   = entitlement.is_metered,
                                                                     limit        = link.limit_override if link.limit_override is not None else entitlement.default_limit,
                                                                     reset_period = entitlement.reset_period)

    visiting.discard(plan.id)
    cache[plan.id] = result
    return result

def plan_on_sale(plan: backend.PlanRow, unix_ts_ms: int) -> bool:
    result = False
    if plan.sale_product_id and plan.sale_start_unix_ts_ms is not None and plan.sale_end_unix_ts_ms is not None:
        result = plan.sale_start_unix_ts_ms <= unix_ts_ms < plan.sale_end_unix_ts_ms
    return result

def plan_detail_dict(plan: backend.PlanRow, attribs: ResolvedPlanAttributes, unix_ts_ms: int) -> base.JSONObject:
    features = sorted(attribs.features.values(), key=lambda it: (it.display_order, it.id))
    result: base.JSONObject = {
        'id':           plan.id,
        'name':         plan.name,
        'product_id':   plan.product_id,
        'order':        plan.display_order,
        'role':         plan.role.value if plan.role else None,
        'sale': {
            'product_id':       plan.sale_product_id,
            'start_unix_ts_ms': plan.sale_start_unix_ts_ms,
            'end_unix_ts_ms':   plan.sale_end_unix_ts_ms,
            'active':           plan_on_sale(plan, unix_ts_ms),
        },
        'features':     [{'name': it.feature, 'order': it.display_order} for it in features],
        'entitlements': [{'name':         it.name,
                          'slug':         it.slug,
                          'is_metered':   it.is_metered,
                          'limit':        it.limit,
                          'reset_period': it.reset_period.value if it.reset_period else None} for it in attribs.entitlements.values()],
    }
    return result

def get_plan_detail_tx(tx: base.SQLTransaction, plan_id: int, unix_ts_ms: int) -> base.JSONObject | None:
    catalog = backend.get_plan_catalog_tx(tx)
    plan    = catalog.get(plan_id)
    result  = None
    if plan:
        result = plan_detail_dict(plan, resolve_plan(plan, catalog, cache={}), unix_ts_ms)
    return result

def get_plan_detail(sql_conn: sqlite3.Connection, plan_id: int, unix_ts_ms: int) -> base.JSONObject | None:
    with base.SQLTransaction(sql_conn) as tx:
        result = get_plan_detail_tx(tx, plan_id, unix_ts_ms)
    return result

def get_all_plan_details(sql_conn: sqlite3.Connection, unix_ts_ms: int) -> list[base.JSONObject]:
    '''Every plan in the catalog fully resolved, in display order'''
    with base.SQLTransaction(sql_conn) as tx:
        catalog = backend.get_plan_catalog_tx(tx)

    cache: dict[int, ResolvedPlanAttributes] = {}
    result = [plan_detail_dict(it, resolve_plan(it, catalog, cache), unix_ts_ms) for it in catalog.values()]
    return result
