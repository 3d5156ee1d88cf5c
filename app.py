import os
import sys
import logging
import random
import uuid
from flask import Flask, request, jsonify, g
from flask_wtf.csrf import CSRFProtect, generate_csrf
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv
from qm_config import QM_CATALOG, GROUPS, MeasureNotFound
from qm_rating import (
    InvalidObservedScores, aggregate, coerce_observed, measure_breakdown,
    status_counts, star_count,
)
from qm_simulation import (
    DEFAULT_PRIORITY_LIMIT, changed_measures, compare, rank_priorities,
    sample_scores, slider_range,
)
from models import (
    init_db, save_scenario, get_scenario, get_recent_scenarios,
    delete_scenario, log_event,
)

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking — gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration

    def _sentry_before_send(event, hint):
        """Demote client-side input errors to breadcrumbs; only unexpected errors become Sentry events."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            if exc_type is not None and issubclass(exc_type, (InvalidObservedScores, MeasureNotFound)):
                sentry_sdk.add_breadcrumb(
                    category="qm_input",
                    message=str(exc_value),
                    level="warning",
                )
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("GIT_COMMIT_SHA"),
        environment=os.environ.get("APP_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'qm-engine-dev-key')
if (not app.config['SECRET_KEY'] or app.config['SECRET_KEY'] == 'qm-engine-dev-key') and os.environ.get('FLASK_DEBUG') != '1':
    print("FATAL: SECRET_KEY is not set. Refusing to start with insecure default.", file=sys.stderr)
    print("Set SECRET_KEY in your environment or .env file.", file=sys.stderr)
    sys.exit(1)

# Behind a reverse proxy: rewrite remote_addr from X-Forwarded-For so
# Flask-Limiter and logging see the real client IP.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

# CSRF protection — the dashboard fetches a token from /api/csrf-token and
# sends it as X-CSRFToken on every scenario write.
csrf = CSRFProtect(app)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting. In-memory storage is per-process (with 2 gunicorn
# workers the effective limit is ~2x nominal).
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
# What-if sliders re-run compare on every change, so these get more headroom.
RATE_LIMIT_SIMULATE = os.environ.get("RATE_LIMIT_SIMULATE", "120/minute")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Request ID middleware — every request gets a unique ID for tracing
# ---------------------------------------------------------------------------
def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    g.request_id = _generate_request_id()


@app.after_request
def _after_request(response):
    response.headers["X-Request-ID"] = getattr(g, "request_id", "")
    return response


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _serialize_measure(measure, current_value=None):
    t = measure.thresholds
    low, high = slider_range(measure, current_value)
    return {
        "id": measure.id,
        "name": measure.name,
        "description": measure.description,
        "group": measure.group,
        "lower_is_better": measure.lower_is_better,
        "national_average": measure.national_average,
        "thresholds": {
            "excellent": t.excellent,
            "good": t.good,
            "fair": t.fair,
            "poor": t.poor,
        },
        "weight": measure.weight,
        "action_plan": list(measure.action_plan),
        "slider": {"min": low, "max": high},
    }


def _serialize_breakdown(observed):
    return [
        {
            "id": s.measure.id,
            "name": s.measure.name,
            "value": s.value,
            "points": s.points,
            "status": s.status.value,
            "weighted_points": s.weighted_points,
        }
        for s in measure_breakdown(QM_CATALOG, observed)
    ]


def _serialize_priority(item):
    return {
        "id": item.measure.id,
        "name": item.measure.name,
        "description": item.measure.description,
        "observed_value": item.observed_value,
        "status": item.status.value,
        "target": item.target,
        "lower_is_better": item.measure.lower_is_better,
        "improvement_gap": round(item.improvement_gap, 4),
        "impact_potential": round(item.impact_potential, 4),
        "required_change_pct": round(item.required_change_pct, 1),
        "action_plan": list(item.measure.action_plan),
    }


def _serialize_change(change):
    return {
        "id": change.measure.id,
        "name": change.measure.name,
        "current_value": change.current_value,
        "what_if_value": change.what_if_value,
        "change": round(change.change, 4),
        "current_points": change.current_points,
        "what_if_points": change.what_if_points,
    }


def _serialize_comparison(current, what_if):
    result = compare(QM_CATALOG, current, what_if)
    return {
        "current_rating": result.current_rating,
        "what_if_rating": result.what_if_rating,
        "delta": result.delta,
        "current_stars": star_count(result.current_rating),
        "what_if_stars": star_count(result.what_if_rating),
        "changed_measures": [
            _serialize_change(c) for c in changed_measures(QM_CATALOG, current, what_if)
        ],
    }


def _json_body():
    """Request JSON as a dict; malformed or non-object bodies become {}."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _parse_limit(raw):
    if raw is None:
        return DEFAULT_PRIORITY_LIMIT
    if isinstance(raw, bool) or not isinstance(raw, (int, str)):
        raise ValueError(f"limit must be an integer, got {raw!r}")
    try:
        limit = int(raw)
    except ValueError:
        raise ValueError(f"limit must be an integer, got {raw!r}")
    if limit < 0:
        raise ValueError(f"limit must be >= 0, got {limit}")
    return limit


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    return jsonify({
        "status": "ok",
        "catalog_version": QM_CATALOG.version,
        "measure_count": len(QM_CATALOG),
    })


@app.route("/api/csrf-token")
def csrf_token():
    """Token for the X-CSRFToken header on scenario writes."""
    return jsonify({"csrf_token": generate_csrf()})


@app.route("/api/measures")
def list_measures():
    group = request.args.get("group")
    if group:
        if group not in GROUPS:
            return jsonify({"error": f"group must be one of {list(GROUPS)}"}), 400
        measures = QM_CATALOG.group(group)
    else:
        measures = QM_CATALOG.all_measures()
    return jsonify({
        "catalog_version": QM_CATALOG.version,
        "measures": [_serialize_measure(m) for m in measures],
    })


@app.route("/api/measures/<measure_id>")
def get_measure(measure_id):
    measure = QM_CATALOG.by_id(measure_id)
    return jsonify(_serialize_measure(measure))


@app.route("/api/rating", methods=["POST"])
@limiter.limit(RATE_LIMIT_SIMULATE)
@csrf.exempt  # Stateless computation; no session-bound side effects.
def rating():
    """Composite rating plus per-measure breakdown for one score set."""
    observed = coerce_observed(_json_body().get("scores"))
    value = aggregate(QM_CATALOG, observed)
    counts = status_counts(QM_CATALOG, observed)
    log_event("rating_computed", metadata={"measures": len(observed)})
    return jsonify({
        "rating": value,
        "stars": star_count(value),
        "has_data": any(counts.values()),
        "status_counts": {status.value: n for status, n in counts.items()},
        "measures": _serialize_breakdown(observed),
    })


@app.route("/api/compare", methods=["POST"])
@limiter.limit(RATE_LIMIT_SIMULATE)
@csrf.exempt  # Stateless computation; no session-bound side effects.
def compare_scenarios():
    """Current vs what-if ratings. JSON: {"current": {...}, "what_if": {...}}."""
    data = _json_body()
    current = coerce_observed(data.get("current"))
    what_if = coerce_observed(data.get("what_if")) if "what_if" in data else dict(current)
    log_event("comparison_run", metadata={"measures": len(current)})
    return jsonify(_serialize_comparison(current, what_if))


@app.route("/api/priorities", methods=["POST"])
@limiter.limit(RATE_LIMIT_SIMULATE)
@csrf.exempt  # Stateless computation; no session-bound side effects.
def priorities():
    """Ranked improvement opportunities. JSON: {"scores": {...}, "limit": 5}."""
    data = _json_body()
    observed = coerce_observed(data.get("scores"))
    try:
        limit = _parse_limit(data.get("limit"))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    items = rank_priorities(QM_CATALOG, observed, limit=limit)
    log_event("priorities_ranked", metadata={"measures": len(observed), "returned": len(items)})
    return jsonify({
        "all_on_track": not items,
        "priorities": [_serialize_priority(i) for i in items],
    })


@app.route("/api/sample")
def sample():
    """Demo score set around national averages. ?seed=N makes it reproducible."""
    seed = request.args.get("seed")
    if seed is not None:
        try:
            rng = random.Random(int(seed))
        except ValueError:
            return jsonify({"error": "seed must be an integer"}), 400
    else:
        rng = random.Random()
    return jsonify({"scores": sample_scores(QM_CATALOG, rng)})


@app.route("/api/scenarios", methods=["POST"])
def create_scenario():
    """Save a what-if scenario. JSON: {"name": ..., "current": {...}, "what_if": {...}}."""
    data = _json_body()
    name = str(data.get("name") or "").strip() or "Untitled scenario"
    current = coerce_observed(data.get("current"))
    what_if = coerce_observed(data.get("what_if")) if "what_if" in data else dict(current)
    scenario_id = save_scenario(name, current, what_if, QM_CATALOG.version)
    log_event("scenario_saved", scenario_id=scenario_id)
    logger.info("[%s] Saved scenario %s (%d measures)", g.request_id, scenario_id, len(current))
    return jsonify({"scenario_id": scenario_id}), 201


@app.route("/api/scenarios")
def list_scenarios():
    return jsonify({"scenarios": get_recent_scenarios()})


@app.route("/api/scenarios/<scenario_id>")
def view_scenario(scenario_id):
    """Stored scenario with ratings recomputed against the live catalog."""
    scenario = get_scenario(scenario_id)
    if not scenario:
        return jsonify({"error": "Scenario not found"}), 404
    log_event("scenario_viewed", scenario_id=scenario_id)
    if scenario["catalog_version"] != QM_CATALOG.version:
        logger.info(
            "Scenario %s saved under catalog %s, rating with %s",
            scenario_id, scenario["catalog_version"], QM_CATALOG.version,
        )
    scenario["comparison"] = _serialize_comparison(scenario["current"], scenario["what_if"])
    return jsonify(scenario)


@app.route("/api/scenarios/<scenario_id>", methods=["DELETE"])
def remove_scenario(scenario_id):
    if not delete_scenario(scenario_id):
        return jsonify({"error": "Scenario not found"}), 404
    return "", 204


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(InvalidObservedScores)
def invalid_scores(e):
    logger.info("[%s] Rejected request: %s", getattr(g, "request_id", "-"), e)
    return jsonify({"error": str(e)}), 400


@app.errorhandler(MeasureNotFound)
def measure_not_found(e):
    return jsonify({"error": str(e)}), 404


@app.errorhandler(429)
def rate_limit_exceeded(e):
    return jsonify({
        "error": "Too many requests. Please wait and try again.",
    }), 429


@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(HTTPException)
def http_error(e):
    return jsonify({"error": e.description}), e.code


@app.errorhandler(500)
def internal_error(e):
    return jsonify({"error": "Internal server error"}), 500


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

# Initialize database on import (safe to call repeatedly)
init_db()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
