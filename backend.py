from __future__ import annotations

# =============================
# Chess Club Bookings Backend
# Events, discounts, refunds and organizer email
# =============================

import os
import re
import html
import math
import atexit
import traceback
from datetime import datetime, timezone
from functools import wraps

from flask import Flask, request, jsonify, session, redirect, g, url_for, make_response, render_template_string
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_wtf import FlaskForm
from flask_wtf.csrf import CSRFProtect, validate_csrf, generate_csrf, CSRFError
from wtforms import StringField, TextAreaField, IntegerField, DecimalField, SelectField, BooleanField
from wtforms.validators import DataRequired, InputRequired, Length, Optional, NumberRange, AnyOf, ValidationError
from werkzeug.datastructures import MultiDict
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from limits import parse as parse_limit

import attachments as attachment_store
import booking_db
import mailer
from booking_db import log_activity, log_error, serialize_row
from discounts import evaluate_discounts, apply_discount_code, DiscountError, OPERATORS
from refunds import resolve_refund, calculate_current_refund, quote_participant_refund, parse_instant

app = Flask(__name__)
app.secret_key = os.environ.get('FLASK_SECRET_KEY')
if not app.secret_key:
    raise ValueError("FLASK_SECRET_KEY environment variable must be set!")
CORS(app, supports_credentials=True)

IS_PROD = os.getenv("IS_PROD", "false").lower() in ("1", "true", "yes")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").rstrip("/")
RUN_SCHEDULER = os.getenv("RUN_SCHEDULER", "true").lower() in ("1", "true", "yes")

app.config.update(
    WTF_CSRF_TIME_LIMIT=3600,
    WTF_CSRF_SSL_STRICT=IS_PROD,
    WTF_CSRF_CHECK_DEFAULT=False,  # validated per route by csrf_required
    WTF_CSRF_ENABLED=os.getenv("WTF_CSRF_ENABLED", "true").lower() in ("1", "true", "yes"),
    RATELIMIT_ENABLED=os.getenv("RATELIMIT_ENABLED", "true").lower() in ("1", "true", "yes"),
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=IS_PROD,
    SESSION_COOKIE_SAMESITE='Lax',
)

# Limits per area of the API; shared across the routes in each area
RATE_LIMITS = {
    'general': "100 per minute",
    'auth': "60 per minute",
    'booking': "100 per minute",
    'events': "10 per minute",
    'organizer': "50 per minute",
    'email': "20 per minute",
}

limiter = Limiter(
    key_func=get_remote_address,
    app=app,
    default_limits=["1000 per day"],
    storage_uri=os.environ.get("RATELIMIT_STORAGE_URI", "memory://"),
)

auth_limit = limiter.shared_limit(RATE_LIMITS['auth'], scope='auth')
booking_limit = limiter.shared_limit(RATE_LIMITS['booking'], scope='booking')
events_limit = limiter.shared_limit(RATE_LIMITS['events'], scope='events')
organizer_limit = limiter.shared_limit(RATE_LIMITS['organizer'], scope='organizer')
email_limit = limiter.shared_limit(RATE_LIMITS['email'], scope='email')

csrf = CSRFProtect(app)

LOGIN_LINK_MAX_AGE = 60 * 60
login_serializer = URLSafeTimedSerializer(app.secret_key, salt="login-link")

if IS_PROD:
    print("🔒 Production mode")
else:
    print("⚠️  Development mode")

scheduler = BackgroundScheduler()
if RUN_SCHEDULER:
    scheduler.start()
    scheduler.add_job(
        func=mailer.process_due_scheduled_emails,
        trigger='interval',
        minutes=5,
        id='scheduled_email_sweep',
        replace_existing=True
    )
    atexit.register(lambda: scheduler.shutdown())


def no_store(resp):
    resp.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
    resp.headers["Pragma"] = "no-cache"
    return resp


def external_url(endpoint, **values):
    """Absolute URL for links that leave the app (emails, upload handshakes)"""
    if PUBLIC_BASE_URL:
        return PUBLIC_BASE_URL + url_for(endpoint, **values)
    return url_for(endpoint, _external=True, **values)


def error_response(message, status=400, **extra):
    payload = {"success": False, "error": message}
    payload.update(extra)
    return jsonify(payload), status


# ============================
# INPUT SANITIZATION
# ============================

def sanitize_text_input(text, max_length=1000):
    """Strip control characters, trim and HTML-escape free text"""
    if not text:
        return ""
    text = re.sub(r'[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]', '', str(text))
    text = text[:max_length]
    return html.escape(text.strip())


def is_valid_email(email: str) -> bool:
    pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    return re.match(pattern, email or '') is not None


def is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def json_formdata(payload):
    """Flatten a JSON object into form data WTForms can coerce"""
    data = MultiDict()
    for key, value in (payload or {}).items():
        if value is None or isinstance(value, (list, dict)):
            continue
        if isinstance(value, bool):
            value = 'true' if value else 'false'
        data.add(key, str(value))
    return data


# =============================
# Session context
# =============================

class SessionContext:
    """The signed-in profile for the current request"""

    def __init__(self, profile=None):
        self.profile = profile

    @property
    def is_authenticated(self):
        return self.profile is not None

    @property
    def profile_id(self):
        return str(self.profile['id']) if self.profile else None

    @property
    def role(self):
        return (self.profile or {}).get('role') or 'user'

    def has_role(self, *roles):
        return self.is_authenticated and self.role in roles

    def can_manage(self, organizer_id):
        if not self.is_authenticated:
            return False
        return self.role == 'admin' or str(organizer_id) == self.profile_id


def get_session_context() -> SessionContext:
    if 'session_context' not in g:
        profile = None
        profile_id = session.get('profile_id')
        if profile_id:
            profile = booking_db.get_profile(profile_id)
            if profile is None:
                session.pop('profile_id', None)
        g.session_context = SessionContext(profile)
    return g.session_context


def require_profile(*roles, page=False):
    """Require a signed-in profile, optionally with one of `roles`.

    Page routes redirect to /auth/login or /unauthorized; API routes answer 401/403.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            ctx = get_session_context()
            if not ctx.is_authenticated:
                if page:
                    return redirect(url_for('login', next=request.path))
                return error_response("Unauthorized", 401)
            if roles and not ctx.has_role(*roles):
                if page:
                    return redirect(url_for('unauthorized_page'))
                return error_response("Forbidden", 403)
            return f(ctx, *args, **kwargs)
        return decorated_function
    return decorator


organizer_required = require_profile('organizer', 'admin')
admin_required = require_profile('admin')


# =============================
# CSRF Protection and Forms
# =============================

def csrf_required(f):
    """Decorator that validates the CSRF token of a mutating API call"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not app.config.get('WTF_CSRF_ENABLED', True):
            return f(*args, **kwargs)

        body = request.get_json(silent=True) or {}
        csrf_token = (
            request.headers.get('X-CSRFToken') or
            request.form.get('csrf_token') or
            (body.get('csrf_token') if isinstance(body, dict) else None)
        )

        if not csrf_token:
            log_activity(f"CSRF token missing for {request.path} from {request.remote_addr}", "warning")
            return error_response("CSRF token required", 400, code="CSRF_TOKEN_MISSING")

        try:
            validate_csrf(csrf_token)
        except (CSRFError, ValidationError) as e:
            log_activity(f"CSRF validation failed for {request.path}: {e}", "warning")
            return error_response(
                "Invalid or expired CSRF token", 403,
                code="CSRF_TOKEN_INVALID",
                message="Please refresh the page and try again"
            )

        return f(*args, **kwargs)

    return decorated_function


class DiscountForm(FlaskForm):
    """Event discount header; rules are validated separately"""
    class Meta:
        csrf = False

    name = StringField('Name', validators=[DataRequired(), Length(min=2, max=255)])
    description = TextAreaField('Description', validators=[Optional(), Length(max=2000)])
    code = StringField('Code', validators=[Optional(), Length(min=3, max=50)])
    discount_type = SelectField('Discount Type',
                                choices=[('code', 'Discount Code'),
                                         ('participant_based', 'Participant Based'),
                                         ('seat_based', 'Seat Based')],
                                validators=[DataRequired()])
    value_type = SelectField('Value Type',
                             choices=[('percentage', 'Percentage'), ('fixed', 'Fixed Amount')],
                             validators=[DataRequired()])
    value = DecimalField('Value', validators=[InputRequired(), NumberRange(min=0, max=100000)], places=2)
    start_date = StringField('Start Date', validators=[Optional()])
    end_date = StringField('End Date', validators=[Optional()])
    is_active = BooleanField('Active', default=True)
    max_uses = IntegerField('Max Uses', validators=[Optional(), NumberRange(min=0)], default=0)
    min_quantity = IntegerField('Min Quantity', validators=[Optional(), NumberRange(min=0)], default=1)
    max_quantity = IntegerField('Max Quantity', validators=[Optional(), NumberRange(min=0)], default=0)


class ParticipantRuleForm(FlaskForm):
    class Meta:
        csrf = False

    rule_type = SelectField('Rule Type',
                            choices=[('previous_event', 'Previous Event'), ('custom', 'Custom Field'),
                                     ('name_match', 'Name Match'), ('dob_match', 'Date of Birth')],
                            validators=[DataRequired()])
    related_event_id = StringField('Related Event', validators=[Optional(), Length(max=64)])
    field_name = StringField('Field', validators=[Optional(), Length(max=255)])
    operator = StringField('Operator', validators=[Optional(), AnyOf(OPERATORS)])
    field_value = StringField('Value', validators=[Optional(), Length(max=255)])


class SeatRuleForm(FlaskForm):
    class Meta:
        csrf = False

    min_seats = IntegerField('Min Seats', validators=[InputRequired(), NumberRange(min=1)])
    max_seats = IntegerField('Max Seats', validators=[Optional(), NumberRange(min=0)])
    discount_amount = DecimalField('Discount Amount', validators=[Optional(), NumberRange(min=0)], places=2)
    discount_percentage = DecimalField('Discount Percentage', validators=[Optional(), NumberRange(min=0, max=100)], places=2)


def form_errors(form):
    return {field: errors for field, errors in form.errors.items()}


def validate_discount_payload(data):
    """Return (discount, rules, seat_rules, errors) from a JSON discount payload"""
    formdata = json_formdata(data)
    if 'is_active' not in formdata:
        formdata['is_active'] = 'true'

    form = DiscountForm(formdata=formdata)
    errors = {}
    if not form.validate():
        errors.update(form_errors(form))

    discount = {
        'name': sanitize_text_input(form.name.data, 255),
        'description': sanitize_text_input(form.description.data, 2000) or None,
        'code': (form.code.data or '').strip().upper() or None,
        'discount_type': form.discount_type.data,
        'value_type': form.value_type.data,
        'value': form.value.data,
        'start_date': form.start_date.data or None,
        'end_date': form.end_date.data or None,
        'is_active': form.is_active.data,
        'max_uses': form.max_uses.data or 0,
        'min_quantity': form.min_quantity.data if form.min_quantity.data is not None else 1,
        'max_quantity': form.max_quantity.data or 0,
    }

    for key in ('start_date', 'end_date'):
        if discount[key]:
            try:
                parse_instant(discount[key])
            except ValueError:
                errors[key] = ["Not a valid date"]

    if discount['discount_type'] == 'code' and not discount['code']:
        errors['code'] = ["A code is required for code discounts"]
    if discount['value_type'] == 'percentage' and discount['value'] is not None and discount['value'] > 100:
        errors['value'] = ["Percentage discounts cannot exceed 100"]

    rules = None
    if 'rules' in data:
        rules = []
        for index, raw in enumerate(data.get('rules') or []):
            rule_form = ParticipantRuleForm(formdata=json_formdata(raw))
            if not rule_form.validate():
                errors[f'rules[{index}]'] = form_errors(rule_form)
                continue
            rule = {
                'rule_type': rule_form.rule_type.data,
                'related_event_id': rule_form.related_event_id.data or None,
                'field_name': rule_form.field_name.data or None,
                'operator': rule_form.operator.data or None,
                'field_value': rule_form.field_value.data or None,
            }
            if rule['rule_type'] == 'previous_event' and not rule['related_event_id']:
                errors[f'rules[{index}]'] = {"related_event_id": ["Select the related event"]}
            elif rule['rule_type'] == 'custom' and not (rule['field_name'] and rule['operator']):
                errors[f'rules[{index}]'] = {"field_name": ["Custom rules need a field and an operator"]}
            rules.append(rule)

    seat_rules = None
    if 'seat_rules' in data:
        seat_rules = []
        for index, raw in enumerate(data.get('seat_rules') or []):
            seat_form = SeatRuleForm(formdata=json_formdata(raw))
            if not seat_form.validate():
                errors[f'seat_rules[{index}]'] = form_errors(seat_form)
                continue
            seat_rule = {
                'min_seats': seat_form.min_seats.data,
                'max_seats': seat_form.max_seats.data or None,
                'discount_amount': seat_form.discount_amount.data or 0,
                'discount_percentage': seat_form.discount_percentage.data,
            }
            if seat_rule['max_seats'] and seat_rule['max_seats'] < seat_rule['min_seats']:
                errors[f'seat_rules[{index}]'] = {"max_seats": ["Max seats must be at least min seats"]}
            seat_rules.append(seat_rule)

    return discount, rules, seat_rules, errors


# =============================
# Middleware logging
# =============================

@app.after_request
def log_response_info(response):
    if response.status_code >= 500:
        log_activity(f"Error response {response.status_code} to {request.path}", "error")
    return response


# =============================
# Health & CSRF
# =============================

@app.route("/healthz", methods=["GET"])
def healthz():
    """Public, minimal health for uptime checks"""
    return no_store(make_response(jsonify({"status": "ok"}), 200))


@app.route('/api/csrf-token', methods=['GET'])
def get_csrf_token():
    token = generate_csrf()
    return no_store(make_response(jsonify({"success": True, "csrf_token": token, "expires_in": 3600})))


# =============================
# Auth (email sign-in links)
# =============================

LOGIN_TEMPLATE = '''
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Sign in</title>
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
               background: #1f2a27; color: #f0e6d2; min-height: 100vh;
               display: flex; align-items: center; justify-content: center; margin: 0; }
        .card { background: #2c3a36; padding: 40px; border-radius: 12px; max-width: 400px; width: 100%; }
        input, button { width: 100%; padding: 12px; margin-top: 12px; border-radius: 6px; border: none; }
        button { background: #c9a227; color: #1f2a27; font-weight: 700; cursor: pointer; }
        .message { margin-top: 12px; color: #ffb4a2; }
    </style>
</head>
<body>
    <div class="card">
        <h1>♞ Sign in</h1>
        <p>We'll email you a one-time sign-in link.</p>
        <form method="POST">
            <input type="hidden" name="csrf_token" value="{{ csrf_token() }}">
            <input type="hidden" name="next" value="{{ next_url }}">
            <input type="email" name="email" placeholder="you@example.com" required>
            <button type="submit">Send link</button>
        </form>
        {% if message %}<div class="message">{{ message }}</div>{% endif %}
    </div>
</body>
</html>
'''


def issue_login_token(profile_id):
    return login_serializer.dumps({"profile_id": str(profile_id)})


def safe_next(url):
    return url if url and url.startswith('/') and not url.startswith('//') else '/dashboard'


@app.route('/auth/login', methods=['GET', 'POST'])
@auth_limit
def login():
    next_url = safe_next(request.values.get('next'))

    if request.method == 'POST':
        try:
            if app.config.get('WTF_CSRF_ENABLED', True):
                validate_csrf(request.form.get('csrf_token'))
        except (CSRFError, ValidationError):
            return render_template_string(LOGIN_TEMPLATE, next_url=next_url,
                                          message="Session expired, please try again"), 400

        email = (request.form.get('email') or '').strip().lower()
        message = "If that address has an account, a sign-in link is on its way."
        if is_valid_email(email):
            profile = booking_db.get_profile_by_email(email)
            if profile:
                link = external_url('login', token=issue_login_token(profile['id']), next=next_url)
                mailer.send_email(
                    email, "Your sign-in link",
                    mailer.render_custom_email(
                        "Your sign-in link",
                        f"Use this link to sign in within the next hour:\n{link}",
                        {}, {}
                    ),
                    to_name=profile.get('full_name')
                )
                log_activity(f"Sign-in link sent to {email}", "info")
        return render_template_string(LOGIN_TEMPLATE, next_url=next_url, message=message)

    token = request.args.get('token')
    if token:
        try:
            data = login_serializer.loads(token, max_age=LOGIN_LINK_MAX_AGE)
        except SignatureExpired:
            return render_template_string(LOGIN_TEMPLATE, next_url=next_url,
                                          message="That link has expired, request a new one"), 400
        except BadSignature:
            return render_template_string(LOGIN_TEMPLATE, next_url=next_url,
                                          message="That link is not valid"), 400

        profile = booking_db.get_profile(data['profile_id'])
        if not profile:
            return redirect(url_for('unauthorized_page'))

        session.clear()
        session['profile_id'] = str(profile['id'])
        session['login_time'] = datetime.now(timezone.utc).isoformat()
        log_activity(f"Sign-in for {profile['email']} from {get_remote_address()}", "success")
        return redirect(next_url)

    return render_template_string(LOGIN_TEMPLATE, next_url=next_url, message=None)


@app.route('/auth/logout', methods=['POST', 'GET'])
def logout():
    session.clear()
    return redirect(url_for('login'))


@app.route('/unauthorized')
def unauthorized_page():
    return render_template_string(
        "<h1>Unauthorized</h1><p>You do not have access to this page.</p>"
        "<p><a href='{{ url_for(\"login\") }}'>Sign in with another account</a></p>"
    ), 403


# =============================
# Attendee dashboard
# =============================

DASHBOARD_TEMPLATE = '''
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>My bookings</title>
    <meta name="csrf-token" content="{{ csrf_token() }}">
</head>
<body>
    <h1>♞ Welcome back, {{ name }}</h1>
    <div id="bookings" data-endpoint="{{ url_for('dashboard_bookings') }}"></div>
    <div id="savings" data-endpoint="{{ url_for('dashboard_discount_savings') }}"></div>
    {% if organizer %}<p><a href="{{ url_for('organizer_page') }}">Organizer tools</a></p>{% endif %}
    <p><a href="{{ url_for('logout') }}">Sign out</a></p>
</body>
</html>
'''


@app.route('/dashboard')
@require_profile(page=True)
def dashboard_page(ctx):
    return render_template_string(
        DASHBOARD_TEMPLATE,
        name=ctx.profile.get('full_name') or ctx.profile['email'],
        organizer=ctx.has_role('organizer', 'admin')
    )


@app.route('/organizer')
@require_profile('organizer', 'admin', page=True)
def organizer_page(ctx):
    return render_template_string(
        "<h1>Organizer tools</h1><p>Signed in as {{ email }}</p>"
        "<meta name='csrf-token' content='{{ csrf_token() }}'>",
        email=ctx.profile['email']
    )


@app.route('/api/dashboard/bookings', methods=['GET'])
@booking_limit
@require_profile()
def dashboard_bookings(ctx):
    """Bookings of the signed-in user with their current refund position"""
    bookings = booking_db.list_user_bookings(ctx.profile_id)
    if bookings is None:
        return error_response("Database error", 500)

    now = datetime.now(timezone.utc)
    result = []
    for booking in bookings:
        event = booking.get('event') or {}
        decision = resolve_refund(booking, event, now)
        quote = calculate_current_refund(booking, event, now)
        row = serialize_row(booking)
        row['can_request_refund'] = decision.eligible
        row['current_refund'] = quote.to_dict() if quote else None
        result.append(row)

    return jsonify({"success": True, "bookings": result, "count": len(result)})


@app.route('/api/dashboard/discount-savings', methods=['GET'])
@booking_limit
@require_profile()
def dashboard_discount_savings(ctx):
    year = datetime.now(timezone.utc).year
    rows = booking_db.discount_savings(ctx.profile_id, year)
    if rows is None:
        return error_response("Failed to fetch discount data", 500)

    return jsonify({
        "success": True,
        "year": year,
        "totalSavings": float(sum((r['applied_value'] or 0) for r in rows)),
        "totalSpent": float(sum((r['original_amount'] or 0) for r in rows)),
        "totalPaid": float(sum((r['final_amount'] or 0) for r in rows)),
        "discountCount": len(rows),
        "discountApplications": [serialize_row(r) for r in rows],
    })


# =============================
# Refunds
# =============================

@app.route('/api/bookings/<booking_id>/refund', methods=['POST'])
@booking_limit
@limiter.limit("10 per hour")
@csrf_required
@require_profile()
def request_refund(ctx, booking_id):
    """Ask for a refund of one of the signed-in user's bookings"""
    data = request.get_json(silent=True) or {}
    reason = sanitize_text_input(data.get('reason'), 500) or 'User requested refund'

    booking = booking_db.get_booking_with_event(booking_id, ctx.profile_id)
    if not booking:
        return error_response("Booking not found", 404)

    decision = resolve_refund(booking, booking.get('event') or {})
    if not decision.eligible:
        return error_response(decision.reason, 400)

    updated = booking_db.mark_refund_requested(
        booking_id, decision.quote.amount, decision.quote.percentage, reason
    )
    if not updated:
        # the update only matches refund_status='none'; a concurrent request may have won
        current = booking_db.get_booking_with_event(booking_id, ctx.profile_id)
        if current and (current.get('refund_status') or 'none') != 'none':
            return error_response("Refund already requested or processed", 400)
        return error_response("Failed to process refund request", 500)

    log_activity(
        f"Refund requested for booking {booking_id}: {decision.quote.amount} ({decision.quote.percentage}%)",
        "warning"
    )
    return jsonify({
        "success": True,
        "refund_status": updated['refund_status'],
        "refund_amount": float(decision.quote.amount),
        "refund_percentage": float(decision.quote.percentage),
        "message": "Refund request submitted"
    })


REFUND_TRANSITIONS = {
    'requested': ('processing', 'completed', 'failed'),
    'processing': ('completed', 'failed'),
    'failed': ('processing',),
}


@app.route('/api/organizer/bookings/<booking_id>/refund-status', methods=['POST'])
@organizer_limit
@csrf_required
@organizer_required
def update_booking_refund_status(ctx, booking_id):
    """Move a requested refund through processing to completed or failed"""
    data = request.get_json(silent=True) or {}
    new_status = data.get('status')

    booking = booking_db.get_booking_with_event(booking_id)
    if not booking:
        return error_response("Booking not found", 404)
    if not ctx.can_manage((booking.get('event') or {}).get('organizer_id')):
        return error_response("Forbidden", 403)

    current = booking.get('refund_status') or 'none'
    if new_status not in REFUND_TRANSITIONS.get(current, ()):
        return error_response(f"Cannot change refund status from {current} to {new_status}", 400)

    updated = booking_db.update_refund_status(booking_id, new_status)
    if not updated:
        return error_response("Failed to update refund status", 500)

    log_activity(f"Refund for booking {booking_id}: {current} -> {new_status} by {ctx.profile['email']}", "info")
    return jsonify({"success": True, "booking": serialize_row(updated)})


# =============================
# Participant withdrawals
# =============================

def complete_withdrawal(ctx, event, participant, booking_reference, booker, reason, withdrawn_by, notify_booker=True):
    """Cancel the participant, quote their refund on price_paid and notify booker and organizer"""
    quote = quote_participant_refund(participant, event)
    try:
        result = booking_db.withdraw_participant(
            participant['id'], reason, quote.amount, quote.percentage, ctx.profile_id
        )
    except Exception as e:
        log_error(f"Error withdrawing participant {participant['id']}: {e}")
        return error_response("Failed to withdraw participant", 500)
    if not result:
        return error_response("Failed to withdraw participant", 400)

    participant_name = f"{participant['first_name']} {participant['last_name']}"
    remaining = booking_db.get_active_participant_names(participant['booking_id']) or []
    organizer = booking_db.get_profile(event.get('organizer_id')) or {}
    organizer_name = organizer.get('full_name') or 'Event Organizer'

    recipients = []
    if notify_booker and booker.get('email'):
        recipients.append((booker['email'], booker.get('full_name')))
    organizer_email = organizer.get('email') or ctx.profile.get('email')
    if organizer_email:
        recipients.append((organizer_email, organizer_name))

    for to_email, to_name in recipients:
        sent = mailer.send_withdrawal_notification(
            to_email, to_name, participant_name, event, booking_reference, withdrawn_by,
            reason, quote, result['booking_cancelled'], remaining, organizer_name
        )
        if not sent.get('success'):
            log_activity(f"Withdrawal email to {to_email} failed: {sent.get('error')}", "warning")

    log_activity(
        f"{participant_name} withdrawn from {event.get('title')} by {ctx.profile['email']} "
        f"(refund {quote.amount}, {quote.percentage}%)",
        "warning"
    )
    return jsonify({
        "success": True,
        "message": "Participant withdrawn and booking cancelled" if result['booking_cancelled']
        else "Participant withdrawn successfully",
        "booking_cancelled": result['booking_cancelled'],
        "remaining_participants": result['remaining_participants'],
        "refund_amount": float(quote.amount),
        "refund_percentage": float(quote.percentage),
        "emails_sent": notify_booker,
    })


@app.route('/api/bookings/<booking_id>/withdraw-participant', methods=['POST'])
@booking_limit
@csrf_required
@require_profile()
def withdraw_booking_participant(ctx, booking_id):
    """Withdraw one participant ({participant_id, reason}) from the signed-in user's booking"""
    data = request.get_json(silent=True) or {}
    participant_id = data.get('participant_id')
    if not participant_id:
        return error_response("Participant ID is required", 400)
    reason = sanitize_text_input(data.get('reason'), 500) or None

    booking = booking_db.get_booking_with_event(booking_id, ctx.profile_id)
    if not booking:
        return error_response("Booking not found", 404)

    participant = booking_db.get_booking_participant(participant_id, booking_id)
    if not participant:
        return error_response("Participant not found", 404)
    if participant.get('status') == 'cancelled':
        return error_response("Participant already cancelled", 400)

    return complete_withdrawal(
        ctx, booking.get('event') or {}, participant, booking.get('booking_id') or booking_id,
        ctx.profile, reason, 'booker'
    )


@app.route('/api/organizer/events/<event_id>/participants/<participant_id>/withdraw', methods=['POST'])
@organizer_limit
@csrf_required
@organizer_required
def organizer_withdraw_participant(ctx, event_id, participant_id):
    """Withdraw a participant on the organizer's side; notify_booker defaults to true"""
    event, error = load_managed_event(ctx, event_id)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    reason = sanitize_text_input(data.get('reason'), 500) or None
    notify_booker = data.get('notify_booker', True) is not False

    participant = booking_db.get_participant_with_booking(participant_id)
    if not participant:
        return error_response("Participant not found", 404)
    booking = participant.get('booking') or {}
    if str((booking.get('event') or {}).get('id')) != str(event['id']):
        return error_response("Participant does not belong to this event", 400)
    if participant.get('status') == 'cancelled':
        return error_response("Participant already cancelled", 400)

    return complete_withdrawal(
        ctx, event, participant, booking.get('booking_id') or booking.get('id'),
        booking.get('user') or {}, reason, 'organizer', notify_booker=notify_booker
    )


# =============================
# Discounts
# =============================

def read_pricing_request(data):
    """Validate baseAmount/quantity; returns (base, quantity, error)"""
    base_amount = data.get('baseAmount')
    quantity = data.get('quantity')
    if not is_number(base_amount) or base_amount < 0:
        return None, None, "Valid base amount is required"
    if not is_number(quantity) or quantity < 1 or int(quantity) != quantity:
        return None, None, "Valid quantity is required"
    return base_amount, int(quantity), None


@app.route('/api/events/<event_id>/calculate-discounts', methods=['POST'])
@events_limit
def calculate_discounts(event_id):
    """Work out the automatic discounts for a prospective booking"""
    data = request.get_json(silent=True) or {}
    participants = data.get('participants')
    if not isinstance(participants, list):
        return error_response("Participants array is required", 400)

    base_amount, quantity, error = read_pricing_request(data)
    if error:
        return error_response(error, 400)

    discounts = booking_db.get_active_discounts(event_id)
    if discounts is None:
        return error_response("Failed to fetch discounts", 500)

    outcome = evaluate_discounts(
        discounts, participants, base_amount, quantity,
        load_previous_bookings=booking_db.get_previous_bookings
    )
    return jsonify({"success": True, **outcome.to_dict()})


@app.route('/api/events/<event_id>/apply-discount-code', methods=['POST'])
@events_limit
@limiter.limit("30 per hour")
def apply_event_discount_code(event_id):
    data = request.get_json(silent=True) or {}
    code = data.get('code')
    if not code or not isinstance(code, str):
        return error_response("Valid discount code is required", 400)

    base_amount, quantity, error = read_pricing_request(data)
    if error:
        return error_response(error, 400)

    discount = booking_db.get_code_discount(event_id, code)
    try:
        amount, final_amount = apply_discount_code(discount, base_amount, quantity)
    except DiscountError as e:
        return error_response(e.message, e.status_code)

    return jsonify({
        "success": True,
        "discount": {
            "id": discount['id'],
            "name": discount['name'],
            "description": discount.get('description'),
            "value_type": discount['value_type'],
            "value": float(discount['value']),
        },
        "discountAmount": float(amount),
        "finalAmount": float(final_amount),
        "message": f"Discount applied: {discount['name']}"
    })


def load_managed_event(ctx, event_id):
    """Fetch an event the caller may manage; returns (event, error_response)"""
    event = booking_db.get_event(event_id)
    if not event:
        return None, error_response("Event not found", 404)
    if not ctx.can_manage(event.get('organizer_id')):
        return None, error_response("Forbidden", 403)
    return event, None


@app.route('/api/organizer/events/<event_id>/discounts', methods=['GET'])
@organizer_limit
@organizer_required
def list_event_discounts(ctx, event_id):
    event, error = load_managed_event(ctx, event_id)
    if error:
        return error

    discounts = booking_db.list_discounts(event_id)
    if discounts is None:
        return error_response("Database error", 500)
    return jsonify({"success": True, "discounts": [serialize_row(d) for d in discounts]})


@app.route('/api/organizer/events/<event_id>/discounts', methods=['POST'])
@organizer_limit
@csrf_required
@organizer_required
def create_event_discount(ctx, event_id):
    event, error = load_managed_event(ctx, event_id)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    discount, rules, seat_rules, errors = validate_discount_payload(data)
    if errors:
        log_activity(f"Discount validation failed for event {event_id}: {errors}", "warning")
        return error_response("Form validation failed", 400, errors=errors)

    try:
        discount_id = booking_db.create_discount(event_id, discount, rules or [], seat_rules or [])
    except Exception as e:
        log_error(f"Error creating discount for event {event_id}: {e}")
        return error_response("Failed to save discount", 500)

    log_activity(f"Discount '{discount['name']}' created for {event['title']}", "success")
    return jsonify({"success": True, "discount": serialize_row(booking_db.get_discount(discount_id))}), 201


def load_managed_discount(ctx, discount_id):
    discount = booking_db.get_discount(discount_id)
    if not discount:
        return None, error_response("Discount not found", 404)
    event, error = load_managed_event(ctx, discount['event_id'])
    if error:
        return None, error
    return discount, None


@app.route('/api/organizer/discounts/<discount_id>', methods=['PUT'])
@organizer_limit
@csrf_required
@organizer_required
def update_event_discount(ctx, discount_id):
    existing, error = load_managed_discount(ctx, discount_id)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    discount, rules, seat_rules, errors = validate_discount_payload(data)
    if errors:
        return error_response("Form validation failed", 400, errors=errors)

    try:
        booking_db.update_discount(discount_id, discount, rules, seat_rules)
    except Exception as e:
        log_error(f"Error updating discount {discount_id}: {e}")
        return error_response("Failed to save discount", 500)

    log_activity(f"Discount '{discount['name']}' updated", "info")
    return jsonify({"success": True, "discount": serialize_row(booking_db.get_discount(discount_id))})


@app.route('/api/organizer/discounts/<discount_id>', methods=['DELETE'])
@organizer_limit
@csrf_required
@organizer_required
def delete_event_discount(ctx, discount_id):
    existing, error = load_managed_discount(ctx, discount_id)
    if error:
        return error

    if not booking_db.delete_discount(discount_id):
        return error_response("Failed to delete discount", 500)

    log_activity(f"Discount '{existing['name']}' deleted", "warning")
    return jsonify({"success": True})


# =============================
# Organizer bookings
# =============================

@app.route('/api/organizer/events/<event_id>/bookings', methods=['GET'])
@organizer_limit
@organizer_required
def organizer_event_bookings(ctx, event_id):
    """Search, filter and page through an event's bookings"""
    event, error = load_managed_event(ctx, event_id)
    if error:
        return error

    search = sanitize_text_input(request.args.get('search'), 100) or None
    status = request.args.get('status', 'all')
    page = max(request.args.get('page', 1, type=int) or 1, 1)
    per_page = min(max(request.args.get('per_page', 25, type=int) or 25, 1), 100)

    rows, total = booking_db.list_event_bookings(
        event_id, search=search, status=status, limit=per_page, offset=(page - 1) * per_page
    )
    if rows is None:
        return error_response("Database error", 500)

    return jsonify({
        "success": True,
        "bookings": [serialize_row(r) for r in rows],
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "pages": math.ceil(total / per_page) if total else 0,
        }
    })


# =============================
# Participant transfers
# =============================

@app.route('/api/events/<event_id>/participants/transfer', methods=['POST'])
@events_limit
@csrf_required
@require_profile()
def transfer_participants(ctx, event_id):
    """Move one participant ({participantId, newSectionId}) or a batch ({transfers: [...]})"""
    data = request.get_json(silent=True) or {}

    batch = 'transfers' in data
    if batch:
        requested = data.get('transfers')
        if not isinstance(requested, list) or not requested:
            return error_response("Transfers array is required", 400)
    else:
        requested = [data]

    for item in requested:
        if not isinstance(item, dict) or not item.get('participantId') or not item.get('newSectionId'):
            return error_response("Missing required fields", 400)

    event = booking_db.get_event(event_id)
    if not event:
        return error_response("Event not found", 404)
    if not ctx.can_manage(event.get('organizer_id')):
        return error_response("Forbidden", 403)

    moves = []
    for item in requested:
        participant = booking_db.get_participant_in_event(item['participantId'], event_id)
        if not participant:
            return error_response("Participant not found", 404, participantId=item['participantId'])
        section = booking_db.get_section(item['newSectionId'], event_id)
        if not section:
            return error_response("Section not found", 404, sectionId=item['newSectionId'])
        moves.append((participant, section))

    try:
        booking_db.set_participant_sections([(p['id'], s['id']) for p, s in moves])
    except Exception as e:
        log_error(f"Error transferring participants for event {event_id}: {e}")
        return error_response("Failed to transfer participant", 500)

    results = []
    for participant, section in moves:
        old_section = participant.get('section_title') or 'No section assigned'
        participant_name = f"{participant['first_name']} {participant['last_name']}"
        if participant.get('booker_email'):
            sent = mailer.send_transfer_notification(
                participant['booker_email'], participant.get('booker_name'), participant_name,
                event['title'], old_section, section['title'],
                ctx.profile.get('full_name') or 'Event Organizer'
            )
            if not sent.get('success'):
                log_activity(f"Transfer email for {participant_name} failed: {sent.get('error')}", "warning")
        results.append({
            "participantId": str(participant['id']),
            "oldSection": old_section,
            "newSection": section['title'],
        })

    log_activity(f"Transferred {len(results)} participant(s) in {event['title']}", "info")

    if batch:
        return jsonify({"success": True, "transferred": len(results), "results": results})
    return jsonify({
        "success": True,
        "message": "Participant transferred successfully",
        "oldSection": results[0]['oldSection'],
        "newSection": results[0]['newSection'],
    })


# =============================
# Organizer email
# =============================

UUID_PATTERN = re.compile(r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.I)
EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')


def display_name(row, fallback):
    if row.get('first_name') and row.get('last_name'):
        parts = [row['first_name'], row.get('middle_name'), row['last_name']]
        return ' '.join(p for p in parts if p)
    return fallback


def recipients_from_rows(rows):
    """Booker and participant recipients, one per email address"""
    seen = set()
    recipients = []
    for row in rows or []:
        booking_ref = row.get('booking_id') or row.get('booking_uuid')
        user_email = row.get('user_email')
        if user_email and user_email.lower() not in seen:
            seen.add(user_email.lower())
            recipients.append({
                "email": user_email,
                "name": row.get('user_name') or user_email,
                "type": 'user',
                "source": f"Booking {booking_ref}",
            })
        if row.get('participant_id'):
            email = row.get('contact_email') or user_email
            if email and email.lower() not in seen:
                seen.add(email.lower())
                recipients.append({
                    "email": email,
                    "name": display_name(row, row.get('user_name') or email),
                    "type": 'participant',
                    "source": f"Participant {row['participant_id']}",
                })
    return recipients


def participant_recipients(participant):
    booking = participant.get('booking') or {}
    user = booking.get('user') or {}
    email = participant.get('contact_email') or user.get('email')
    if not email:
        return []
    return [{
        "email": email,
        "name": display_name(participant, user.get('full_name') or email),
        "type": 'participant',
        "source": f"Participant {participant['id']}",
    }]


def event_context(ctx, event):
    if event and ctx.can_manage(event.get('organizer_id')):
        return {"event": serialize_row(event)}, recipients_from_rows(booking_db.get_event_recipient_rows(event['id']))
    return None


def booking_context(ctx, booking):
    if booking and ctx.can_manage((booking.get('event') or {}).get('organizer_id')):
        return {"booking": serialize_row(booking)}, recipients_from_rows(booking_db.get_booking_recipient_rows(booking['id']))
    return None


def participant_context(ctx, participant):
    if participant and ctx.can_manage(((participant.get('booking') or {}).get('event') or {}).get('organizer_id')):
        return {"participant": serialize_row(participant)}, participant_recipients(participant)
    return None


def resolve_email_context(ctx, context_key=None, context_value=None, raw_input=None):
    """Find the event, booking, participant or profile an organizer is writing about"""
    if context_key and context_value:
        value = str(context_value).strip()
        if context_key == 'eventId':
            return event_context(ctx, booking_db.get_event(value))
        if context_key == 'bookingId':
            return booking_context(ctx, booking_db.get_booking_with_event(value))
        if context_key == 'participantId':
            return participant_context(ctx, booking_db.get_participant_with_booking(value))
        print(f"[email-context] Unknown context key {context_key}, falling back to auto-detection")

    value = (raw_input or '').strip()
    if not value:
        return None

    if UUID_PATTERN.match(value):
        found = (
            event_context(ctx, booking_db.get_event(value))
            or booking_context(ctx, booking_db.get_booking_with_event(value))
            or participant_context(ctx, booking_db.get_participant_with_booking(value))
        )
        if found:
            return found

    found = (
        booking_context(ctx, booking_db.get_booking_by_reference(value))
        or event_context(ctx, booking_db.get_event_by_alias(value))
    )
    if found:
        return found

    if EMAIL_PATTERN.match(value):
        user = booking_db.get_profile_by_email(value)
        if user:
            return {"user": serialize_row(user)}, [{
                "email": user['email'],
                "name": user.get('full_name') or user['email'],
                "type": 'user',
                "source": 'User Profile',
            }]

    return None


@app.route('/api/organizer/email-context', methods=['POST'])
@email_limit
@csrf_required
@organizer_required
def email_context(ctx):
    data = request.get_json(silent=True) or {}
    found = resolve_email_context(
        ctx,
        context_key=data.get('contextKey'),
        context_value=data.get('contextValue'),
        raw_input=data.get('input') or (data.get('contextValue') if data.get('contextKey') else None),
    )
    if not found:
        return jsonify({"success": True, "context": {}, "recipients": []})

    context, recipients = found
    return jsonify({"success": True, "context": context, "recipients": recipients})


def schedule_email_job(email_id, run_at):
    if not RUN_SCHEDULER:
        return False
    scheduler.add_job(
        func=mailer.send_scheduled_email,
        trigger=DateTrigger(run_date=run_at),
        args=[email_id],
        id=f'scheduled_email_{email_id}',
        replace_existing=True
    )
    return True


@app.route('/api/organizer/send-email', methods=['POST'])
@email_limit
@csrf_required
@organizer_required
def send_organizer_email(ctx):
    """Send (or schedule) an organizer-written email to a list of recipients"""
    data = request.get_json(silent=True) or {}
    recipients = mailer.unique_recipients(data.get('recipients') or [])
    subject = (data.get('subject') or '').strip()
    message = (data.get('message') or '').strip()
    context = data.get('context') or {}
    files_meta = data.get('attachments') or []
    scheduled_date = data.get('scheduledDate')

    if not recipients:
        return error_response("Recipients are required", 400)
    if not subject or not message:
        return error_response("Subject and message are required", 400)
    invalid = [r for r in recipients if not is_valid_email(r)]
    if invalid:
        return error_response(f"Invalid recipient email: {invalid[0]}", 400)

    if scheduled_date:
        try:
            run_at = parse_instant(scheduled_date)
        except ValueError:
            return error_response("Invalid scheduled date", 400)
        if run_at <= datetime.now(timezone.utc):
            return error_response("Scheduled date must be in the future", 400)

        stored = booking_db.insert_scheduled_email(
            ctx.profile_id, recipients, subject, message, context, run_at, files_meta
        )
        if not stored:
            return error_response("Failed to schedule email", 500)

        schedule_email_job(stored['id'], run_at)
        log_activity(f"Email '{subject}' scheduled for {run_at.isoformat()} to {len(recipients)} recipients", "info")
        return jsonify({
            "success": True,
            "message": "Email scheduled successfully",
            "scheduledId": str(stored['id'])
        })

    try:
        stats = mailer.deliver_organizer_email(ctx.profile, recipients, subject, message, context, files_meta)
    except attachment_store.AttachmentError as e:
        log_activity(f"Organizer email aborted: {e}", "warning")
        return error_response(f"Failed to process attachments: {e}", 500)

    summary = f"Email sent successfully to {stats['successful']} recipients"
    if stats['failed']:
        summary += f", failed for {stats['failed']} recipients"

    return jsonify({
        "success": True,
        "message": summary,
        "stats": {
            "total": stats['total'],
            "successful": stats['successful'],
            "failed": stats['failed'],
        }
    })


@app.route('/api/organizer/upload-attachment', methods=['POST'])
@email_limit
@csrf_required
@organizer_required
def upload_attachment(ctx):
    """First half of the upload handshake: hand out a signed, short-lived upload URL"""
    data = request.get_json(silent=True) or {}
    filename = data.get('filename')
    content_type = data.get('contentType')
    if not filename or not content_type:
        return error_response("filename and contentType are required", 400)

    try:
        key, token = attachment_store.issue_upload_token(app.secret_key, filename, content_type, ctx.profile_id)
    except attachment_store.AttachmentError as e:
        return error_response(str(e), 400)

    return jsonify({
        "success": True,
        "blobKey": key,
        "uploadUrl": external_url('upload_attachment_blob', token=token),
        "expiresIn": attachment_store.UPLOAD_TOKEN_MAX_AGE,
        "maximumSizeInBytes": attachment_store.MAX_ATTACHMENT_BYTES,
    })


@app.route('/api/organizer/attachments/<token>', methods=['PUT'])
@email_limit
@organizer_required
def upload_attachment_blob(ctx, token):
    """Second half of the handshake: store the body under the key signed into `token`"""
    try:
        grant = attachment_store.read_upload_token(app.secret_key, token)
    except attachment_store.AttachmentError as e:
        return error_response(str(e), 400)

    if grant['organizer_id'] != ctx.profile_id:
        return error_response("Forbidden", 403)
    if request.mimetype and request.mimetype != grant['content_type']:
        return error_response("Content type does not match the upload URL", 400)

    try:
        attachment_store.store_blob(grant['key'], request.get_data())
    except attachment_store.AttachmentError as e:
        return error_response(str(e), 400)

    log_activity(f"Email attachment uploaded: {grant['key']} by {ctx.profile['email']}", "info")
    return jsonify({"success": True, "blobKey": grant['key'], "contentType": grant['content_type']})


# =============================
# Rate limit status
# =============================

@app.route('/api/rate-limit/status', methods=['GET'])
@admin_required
def rate_limit_status(ctx):
    """Configured limits and the caller's remaining budget in each area"""
    identity = get_remote_address()
    categories = {}
    for scope, limit_string in RATE_LIMITS.items():
        entry = {"limit": limit_string}
        if limiter.enabled:
            item = parse_limit(limit_string)
            stats = limiter.limiter.get_window_stats(item, identity, scope)
            entry["remaining"] = stats[1]
            entry["reset_at"] = datetime.fromtimestamp(stats[0], timezone.utc).isoformat()
        categories[scope] = entry

    return no_store(make_response(jsonify({
        "success": True,
        "data": {
            "enabled": bool(limiter.enabled),
            "identity": identity,
            "categories": categories,
        },
        "timestamp": datetime.now(timezone.utc).isoformat()
    })))


@app.route('/api/activity', methods=['GET'])
@admin_required
def get_activity(ctx):
    try:
        limit = min(int(request.args.get('limit', 20)), 200)
        activities = booking_db.get_activity_log(limit)
        return jsonify({"success": True, "activity": activities})
    except ValueError:
        return error_response("limit must be a number", 400)


# =============================
# Error handlers
# =============================

@app.errorhandler(400)
def bad_request(error):
    return error_response("Bad request", 400, message=str(error))


@app.errorhandler(401)
def unauthorized(error):
    return error_response("Unauthorized", 401, message=str(error))


@app.errorhandler(403)
def forbidden(error):
    return error_response("Forbidden", 403, message=str(error))


@app.errorhandler(404)
def not_found(error):
    return error_response("Not found", 404, message=str(error))


@app.errorhandler(405)
def method_not_allowed(error):
    return error_response("Method not allowed", 405, message=str(error))


@app.errorhandler(429)
def too_many_requests(error):
    return error_response("Too many requests", 429, message="Please try again later")


@app.errorhandler(500)
def internal_server_error(error):
    print(f"Server Error: {error}")
    print(f"Traceback: {traceback.format_exc()}")
    return error_response("Internal server error", 500, message="An error occurred.")


@app.errorhandler(Exception)
def handle_exception(error):
    log_error(f"Unhandled exception on {request.path}: {error}")
    return error_response("Server error", 500, message="An error occurred.")


# =============================
# Main
# =============================
if __name__ == '__main__':
    print("🚀 Chess Club Bookings backend starting...")
    if booking_db.init_database():
        print("✅ Database ready!")
    else:
        print("❌ Database initialization failed!")

    log_activity("Bookings backend started", "info")
    port = int(os.environ.get('PORT', 4000))
    app.run(host='0.0.0.0', port=port, debug=not IS_PROD, threaded=True)
