import os
import logging
from functools import wraps
from datetime import datetime, date, timezone
from dotenv import load_dotenv
from flask import Flask, request, abort, jsonify, g
from flask_login import LoginManager, login_required, current_user
from flask_mail import Mail, Message
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from sqlalchemy.orm import joinedload
from werkzeug.exceptions import Forbidden

from models import (db, bcrypt, utcnow, User, Team, WorkCenter, EquipmentCategory,
                    Department, Location, Equipment, MaintenanceRequest, RequestNote, RequestInstruction,
                    RequestWorksheetComment, RequestStageHistory, STAGES, OPEN_STAGES, CLOSED_STAGES)
from permissions import (ROLES, EMPLOYEE, TECHNICIAN, Scope, PERMISSIONS, PolicyMisconfiguredError,
                         is_allowed, has_permission, capabilities, resolve_visibility, can_access_request,
                         validate_wiring, VIEW_ALL_REQUESTS, VIEW_OWN_REQUESTS, CREATE_REQUEST,
                         UPDATE_REQUEST_STAGE, DELETE_REQUEST, ADD_NOTES, ADD_INSTRUCTIONS, ADD_WORKSHEET,
                         MANAGE_EQUIPMENT, MANAGE_WORKCENTERS, MANAGE_TEAMS, CHANGE_USER_ROLES)

load_dotenv()

app = Flask(__name__)

app.config['SECRET_KEY'] = os.getenv("SECRET_KEY")
app.config['SQLALCHEMY_DATABASE_URI'] = os.getenv("DATABASE_URI")
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

# --- AUTH CONFIGURATION ---
app.config['AUTH_TOKEN_MAX_AGE'] = int(os.getenv('AUTH_TOKEN_MAX_AGE', 8 * 3600))
app.config['AUTO_CONFIRM_EMAILS'] = os.getenv('AUTO_CONFIRM_EMAILS', 'false').lower() in ['true', '1']
app.config['SIGNUP_ROLES'] = [
    role.strip().upper() for role in os.getenv('SIGNUP_ROLES', ','.join(ROLES)).split(',')
    if role.strip().upper() in ROLES
]
app.config['BCRYPT_LOG_ROUNDS'] = int(os.getenv('BCRYPT_LOG_ROUNDS', 12))
app.config['FRONTEND_URL'] = os.getenv('FRONTEND_URL', 'http://localhost:5173')
app.config['DEFAULT_COMPANY'] = os.getenv('DEFAULT_COMPANY', 'My Company')

# --- MAIL CONFIGURATION ---
app.config['MAIL_SERVER'] = os.getenv('MAIL_SERVER', 'smtp.gmail.com')
app.config['MAIL_PORT'] = int(os.getenv('MAIL_PORT', 465))
app.config['MAIL_USE_TLS'] = os.getenv('MAIL_USE_TLS', 'false').lower() in ['true', '1']
app.config['MAIL_USE_SSL'] = os.getenv('MAIL_USE_SSL', 'true').lower() in ['true', '1']
app.config['MAIL_USERNAME'] = os.getenv('MAIL_USERNAME')
app.config['MAIL_PASSWORD'] = os.getenv('MAIL_PASSWORD')
app.config['MAIL_DEFAULT_SENDER'] = os.getenv('MAIL_DEFAULT_SENDER', 'noreply@gearguard.local')
app.config['MAIL_SUPPRESS_SEND'] = os.getenv('MAIL_SUPPRESS_SEND', 'false').lower() in ['true', '1']

app.logger.setLevel(os.getenv('LOG_LEVEL', 'INFO').upper())
logging.getLogger('permissions').setLevel(os.getenv('LOG_LEVEL', 'INFO').upper())

mail = Mail(app)

db.init_app(app)
bcrypt.init_app(app)

login_manager = LoginManager()
login_manager.init_app(app)

VALID_MAINTENANCE_FOR = ('EQUIPMENT', 'WORKCENTER')
VALID_MAINTENANCE_TYPES = ('CORRECTIVE', 'PREVENTIVE')
VALID_USED_BY_TYPES = ('EMPLOYEE', 'DEPARTMENT')

# --- AUTHENTICATION & AUTHORIZATION ---

@login_manager.request_loader
def load_user_from_request(req):
    """Resolves the actor from an `Authorization: Bearer <token>` header."""
    auth_header = req.headers.get('Authorization', '')
    if not auth_header.startswith('Bearer '):
        return None
    token = auth_header[len('Bearer '):].strip()
    if not token:
        return None
    user = User.verify_auth_token(token, max_age=app.config['AUTH_TOKEN_MAX_AGE'])
    if user is None or not user.is_active:
        return None
    return user

@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'message': 'Not authenticated'}), 401

def permission_required(action):
    # Unknown actions are a wiring bug; refuse to register the route at all.
    if action not in PERMISSIONS:
        raise PolicyMisconfiguredError(f"Route requires undefined action '{action}'")

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                return login_manager.unauthorized()

            if not is_allowed(current_user.role, action):
                app.logger.info("Denied %s to user %s (role=%s)", action, current_user.id, current_user.role)
                abort(403)
            return f(*args, **kwargs)
        decorated_function.required_action = action
        return decorated_function
    return decorator

def request_access_required(f):
    """Grants access to request reads and stores the actor's visibility in `g`."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated:
            return login_manager.unauthorized()

        visibility = resolve_visibility(current_user)
        if visibility.denied:
            abort(403, description="You don't have permission to view requests")
        g.visibility = visibility
        return f(*args, **kwargs)
    decorated_function.required_action = (VIEW_ALL_REQUESTS, VIEW_OWN_REQUESTS)
    return decorated_function

def apply_visibility(query, visibility):
    """Narrows a MaintenanceRequest query to the rows the visibility allows."""
    if visibility.scope == Scope.ALL:
        return query
    if visibility.scope == Scope.OWN:
        return query.filter(getattr(MaintenanceRequest, visibility.field) == visibility.actor_id)
    # A denied actor gets a 403, never an empty list
    abort(403, description="You don't have permission to view requests")

# Fail at startup if the endpoint wiring table names an action the matrix lacks
validate_wiring()

# --- CUSTOM ERROR HANDLERS ---

@app.errorhandler(400)
def bad_request_error(error):
    return jsonify({'message': error.description or 'Bad request.'}), 400

@app.errorhandler(403)
def forbidden_error(error):
    """Actor resolved, but the action or ownership check failed."""
    message = error.description
    if not message or message == Forbidden.description:
        message = "You don't have permission to perform this action"
    return jsonify({'message': message}), 403

@app.errorhandler(404)
def not_found_error(error):
    return jsonify({'message': 'Resource not found.'}), 404

@app.errorhandler(500)
def internal_error(error):
    db.session.rollback()
    return jsonify({'message': 'An internal error occurred.'}), 500

# --- INPUT HELPERS ---

def get_json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}

def parse_optional_int(value, field):
    if value in (None, ''):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        abort(400, description=f"'{field}' must be an integer.")

def parse_optional_number(value, field):
    if value in (None, ''):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        abort(400, description=f"'{field}' must be a number.")

def parse_optional_date(value, field):
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        abort(400, description=f"'{field}' must be a date (YYYY-MM-DD).")

def parse_scheduled_at(value):
    """Accepts 'YYYY-MM-DD HH:MM[:SS]' or ISO 8601 and returns naive UTC."""
    if not value:
        return None
    text = str(value).strip().replace(' ', 'T', 1)
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        abort(400, description="'scheduled_at' must be an ISO 8601 date-time.")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed

def commit_or_error(context):
    """Commits the session; on failure rolls back, logs and returns an error response."""
    try:
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        app.logger.warning("Integrity error in %s: %s", context, e.orig)
        return jsonify({'message': 'The request conflicts with existing data.'}), 400
    except SQLAlchemyError:
        db.session.rollback()
        app.logger.exception("Database error in %s", context)
        return jsonify({'message': 'A database error occurred.'}), 500
    return None

# --- EMAIL HELPERS ---

def send_verification_email(user):
    """Sends the account verification link to a newly registered user."""
    token = user.get_verification_token()
    verify_url = f"{app.config['FRONTEND_URL']}/verify-email?token={token}"
    msg = Message(
        'Welcome to GearGuard! Verify Your Email',
        recipients=[user.email]
    )
    msg.body = f'''Welcome to GearGuard, {user.name}!

To activate your account, please visit the following link:
{verify_url}

If you did not sign up for GearGuard, you can safely ignore this email.

Thanks,
The GearGuard Team
'''
    try:
        mail.send(msg)
        return True
    except Exception:
        app.logger.exception("Error sending verification email to user %s", user.id)
        return False

def session_payload(user):
    return {
        'access_token': user.get_auth_token(),
        'token_type': 'bearer',
        'expires_in': app.config['AUTH_TOKEN_MAX_AGE'],
    }

# --- AUTHENTICATION ROUTES ---

@app.route('/api/auth/signup', methods=['POST'])
def signup():
    data = get_json_body()
    name = (data.get('name') or '').strip()
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''

    if not all([name, email, password]):
        abort(400, description='Name, email and password are required.')

    # Unknown or disallowed roles silently fall back to EMPLOYEE
    requested_role = data.get('role')
    user_role = requested_role if requested_role in app.config['SIGNUP_ROLES'] else EMPLOYEE

    existing = User.query.filter_by(email=email).first()
    if existing:
        if not existing.is_confirmed and app.config['AUTO_CONFIRM_EMAILS']:
            existing.confirm_email()
            error = commit_or_error('signup')
            if error:
                return error
            return jsonify({'message': 'User already exists. Your account has been activated. Please try logging in.'}), 400
        return jsonify({'message': 'User already exists. Please try logging in instead.'}), 400

    user = User(name=name, email=email, role=user_role)
    user.set_password(password)
    if app.config['AUTO_CONFIRM_EMAILS']:
        user.confirm_email()
    db.session.add(user)
    error = commit_or_error('signup')
    if error:
        return error
    app.logger.info("User %s signed up with role %s", user.id, user.role)

    if user.is_confirmed:
        message = 'Signup successful! You can now log in.'
    else:
        send_verification_email(user)
        message = 'Signup successful! Please check your email to verify your account.'
    return jsonify({'message': message, 'email': user.email})

@app.route('/api/auth/login', methods=['POST'])
def login():
    data = get_json_body()
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''

    user = User.query.filter_by(email=email).first()
    if not user or not password or not user.check_password(password):
        return jsonify({'message': 'Invalid login credentials'}), 400
    if not user.is_active:
        return jsonify({'message': 'This account has been disabled.'}), 400

    if not user.is_confirmed:
        if not app.config['AUTO_CONFIRM_EMAILS']:
            return jsonify({
                'message': 'Your email is not confirmed. Please check your email for a verification link, or contact support.'
            }), 400
        user.confirm_email()
        app.logger.info("Auto-confirmed email for user %s on login", user.id)

    user.last_login = utcnow()
    error = commit_or_error('login')
    if error:
        return error

    return jsonify({
        'user': user.to_dict(),
        'session': session_payload(user),
        'capabilities': capabilities(user),
    })

@app.route('/api/auth/verify-email', methods=['POST'])
def verify_email():
    token = get_json_body().get('token')
    if not token:
        abort(400, description='Verification token is required')

    user = User.verify_email_token(token)
    if user is None:
        return jsonify({'message': 'Invalid or expired verification token'}), 400

    user.confirm_email()
    error = commit_or_error('verify_email')
    if error:
        return error
    return jsonify({'message': 'Email verified successfully!', 'user': user.to_dict()})

@app.route('/api/auth/resend-verification', methods=['POST'])
def resend_verification():
    email = (get_json_body().get('email') or '').strip().lower()
    if not email:
        abort(400, description='Email is required')

    user = User.query.filter_by(email=email).first()
    # Same reply whether or not the account exists
    if user and not user.is_confirmed:
        send_verification_email(user)
    return jsonify({'message': 'Verification email sent! Please check your inbox.'})

@app.route('/api/auth/me')
@login_required
def current_profile():
    """Returns the actor and a capability map the frontend uses to show or hide controls."""
    return jsonify({'user': current_user.to_dict(), 'capabilities': capabilities(current_user)})

# --- DASHBOARD ROUTES ---

def visible_requests_query():
    return apply_visibility(MaintenanceRequest.query, resolve_visibility(current_user))

@app.route('/api/dashboard/summary')
@login_required
def dashboard_summary():
    request_query = visible_requests_query()
    now = utcnow().replace(tzinfo=None)

    open_requests = request_query.filter(MaintenanceRequest.stage.in_(OPEN_STAGES)).count()
    overdue_requests = request_query.filter(
        MaintenanceRequest.scheduled_at.isnot(None),
        MaintenanceRequest.scheduled_at < now,
        ~MaintenanceRequest.stage.in_(CLOSED_STAGES)
    ).count()

    # Equipment that is down: an open request against it is blocked
    critical_equipment = request_query.filter(
        MaintenanceRequest.equipment_id.isnot(None),
        MaintenanceRequest.stage.in_(OPEN_STAGES),
        MaintenanceRequest.blocked.is_(True)
    ).with_entities(func.count(func.distinct(MaintenanceRequest.equipment_id))).scalar()

    # Org-wide: share of technicians currently holding at least one open request
    busy_technicians = db.session.query(func.count(func.distinct(MaintenanceRequest.technician_id))).filter(
        MaintenanceRequest.stage.in_(OPEN_STAGES),
        MaintenanceRequest.technician_id.isnot(None)
    ).scalar()
    total_technicians = User.query.filter_by(role=TECHNICIAN).count()
    technician_load = round(busy_technicians * 100 / total_technicians) if total_technicians else 0

    return jsonify({
        'critical_equipment': critical_equipment or 0,
        'technician_load_percent': technician_load,
        'open_requests': open_requests,
        'overdue_requests': overdue_requests,
    })

@app.route('/api/dashboard/recent-requests')
@login_required
def dashboard_recent_requests():
    recent = visible_requests_query().options(
        joinedload(MaintenanceRequest.created_by),
        joinedload(MaintenanceRequest.technician),
        joinedload(MaintenanceRequest.category)
    ).order_by(MaintenanceRequest.created_at.desc(), MaintenanceRequest.id.desc()).limit(10).all()

    return jsonify([{
        'id': r.id,
        'subject': r.subject,
        'employee': r.created_by.name if r.created_by else None,
        'technician': r.technician.name if r.technician else None,
        'category': r.category.name if r.category else None,
        'stage': r.stage,
        'company': r.company,
    } for r in recent])

# --- EQUIPMENT ROUTES ---

EQUIPMENT_INT_FIELDS = ('category_id', 'maintenance_team_id', 'default_technician_id', 'location_id')
EQUIPMENT_DATE_FIELDS = ('assigned_date', 'scrap_date', 'purchase_date', 'warranty_end_date')

def apply_equipment_fields(equipment, data):
    """Copies whitelisted fields from a JSON body onto an Equipment row."""
    if 'name' in data:
        equipment.name = (data.get('name') or '').strip()
    if not equipment.name:
        abort(400, description='Equipment name is required.')

    if 'serial_number' in data:
        equipment.serial_number = data.get('serial_number') or None
    if 'description' in data:
        equipment.description = data.get('description') or None
    for field in EQUIPMENT_INT_FIELDS:
        if field in data:
            setattr(equipment, field, parse_optional_int(data.get(field), field))
    for field in EQUIPMENT_DATE_FIELDS:
        if field in data:
            setattr(equipment, field, parse_optional_date(data.get(field), field))

    used_by_type = data.get('used_by_type') or equipment.used_by_type or 'EMPLOYEE'
    if used_by_type not in VALID_USED_BY_TYPES:
        abort(400, description="'used_by_type' must be EMPLOYEE or DEPARTMENT.")
    used_by_user_id = parse_optional_int(data.get('used_by_user_id', equipment.used_by_user_id), 'used_by_user_id')
    used_by_department_id = parse_optional_int(
        data.get('used_by_department_id', equipment.used_by_department_id), 'used_by_department_id')

    if used_by_type == 'EMPLOYEE' and not used_by_user_id:
        abort(400, description="Employee is required when 'Used By' is Employee")
    if used_by_type == 'DEPARTMENT' and not used_by_department_id:
        abort(400, description="Department is required when 'Used By' is Department")

    equipment.used_by_type = used_by_type
    equipment.used_by_user_id = used_by_user_id if used_by_type == 'EMPLOYEE' else None
    equipment.used_by_department_id = used_by_department_id if used_by_type == 'DEPARTMENT' else None

@app.route('/api/equipment')
@permission_required(MANAGE_EQUIPMENT)
def manage_equipment():
    equipment = Equipment.query.options(
        joinedload(Equipment.category),
        joinedload(Equipment.used_by_user),
        joinedload(Equipment.used_by_department),
        joinedload(Equipment.default_technician),
        joinedload(Equipment.location)
    ).order_by(Equipment.created_at.desc(), Equipment.id.desc()).all()
    return jsonify([eq.to_dict() for eq in equipment])

@app.route('/api/equipment/meta')
@login_required
def equipment_meta():
    """Lookup lists for the equipment form dropdowns."""
    return jsonify({
        'categories': [{'id': c.id, 'name': c.name} for c in EquipmentCategory.query.order_by(EquipmentCategory.name)],
        'departments': [{'id': d.id, 'name': d.name} for d in Department.query.order_by(Department.name)],
        'locations': [{'id': l.id, 'name': l.name} for l in Location.query.order_by(Location.name)],
        'teams': [{'id': t.id, 'name': t.name} for t in Team.query.order_by(Team.name)],
        'users': [{'id': u.id, 'name': u.name, 'role': u.role} for u in User.query.order_by(User.name)],
        'workcenters': [{'id': w.id, 'name': w.name} for w in WorkCenter.query.order_by(WorkCenter.name)],
    })

@app.route('/api/equipment/<int:equipment_id>')
@login_required
def view_equipment(equipment_id):
    equipment = db.get_or_404(Equipment, equipment_id)
    return jsonify(equipment.to_dict())

@app.route('/api/equipment', methods=['POST'])
@permission_required(MANAGE_EQUIPMENT)
def add_equipment():
    new_equipment = Equipment(company=app.config['DEFAULT_COMPANY'])
    apply_equipment_fields(new_equipment, get_json_body())

    db.session.add(new_equipment)
    error = commit_or_error('add_equipment')
    if error:
        return error
    return jsonify({'message': 'Equipment created', 'data': new_equipment.to_dict()})

@app.route('/api/equipment/<int:equipment_id>', methods=['PUT'])
@permission_required(MANAGE_EQUIPMENT)
def edit_equipment(equipment_id):
    equipment = db.get_or_404(Equipment, equipment_id)
    apply_equipment_fields(equipment, get_json_body())

    error = commit_or_error('edit_equipment')
    if error:
        return error
    return jsonify({'message': 'Updated', 'data': equipment.to_dict()})

@app.route('/api/equipment/<int:equipment_id>', methods=['DELETE'])
@permission_required(MANAGE_EQUIPMENT)
def delete_equipment(equipment_id):
    equipment = db.get_or_404(Equipment, equipment_id)
    db.session.delete(equipment)
    error = commit_or_error('delete_equipment')
    if error:
        return error
    return jsonify({'message': 'Deleted'})

# --- MAINTENANCE REQUEST ROUTES ---

@app.route('/api/requests')
@request_access_required
def list_requests():
    requests_query = apply_visibility(MaintenanceRequest.query, g.visibility).options(
        joinedload(MaintenanceRequest.created_by),
        joinedload(MaintenanceRequest.technician),
        joinedload(MaintenanceRequest.equipment),
        joinedload(MaintenanceRequest.workcenter),
        joinedload(MaintenanceRequest.category),
        joinedload(MaintenanceRequest.team)
    )

    search_query = request.args.get('q', '').strip()
    if search_query:
        requests_query = requests_query.filter(MaintenanceRequest.subject.ilike(f'%{search_query}%'))

    maintenance_requests = requests_query.order_by(
        MaintenanceRequest.created_at.desc(), MaintenanceRequest.id.desc()).all()
    return jsonify([r.to_dict() for r in maintenance_requests])

@app.route('/api/requests/meta')
@login_required
def request_meta():
    """Lookup lists for the request form dropdowns."""
    return jsonify({
        'equipment': [{'id': e.id, 'name': e.name, 'serial_number': e.serial_number}
                      for e in Equipment.query.order_by(Equipment.name)],
        'workcenters': [{'id': w.id, 'name': w.name} for w in WorkCenter.query.order_by(WorkCenter.name)],
        'teams': [{'id': t.id, 'name': t.name} for t in Team.query.order_by(Team.name)],
        'techs': [{'id': u.id, 'name': u.name} for u in User.query.filter_by(role=TECHNICIAN).order_by(User.name)],
        'categories': [{'id': c.id, 'name': c.name} for c in EquipmentCategory.query.order_by(EquipmentCategory.name)],
    })

@app.route('/api/requests/<int:request_id>/details')
@request_access_required
def request_details(request_id):
    maintenance_request = db.get_or_404(MaintenanceRequest, request_id)

    if not g.visibility.matches(maintenance_request):
        if current_user.role == TECHNICIAN:
            abort(403, description='You can only view requests assigned to you')
        abort(403, description='You can only view your own requests')

    history = RequestStageHistory.query.filter_by(request_id=request_id).order_by(
        RequestStageHistory.changed_at.desc(), RequestStageHistory.id.desc()).all()

    return jsonify({
        'request': maintenance_request.to_dict(),
        'notes': [n.entry_dict('note') for n in maintenance_request.notes],
        'instructions': [i.entry_dict('instruction') for i in maintenance_request.instructions],
        'worksheet': [w.entry_dict('comment') for w in maintenance_request.worksheet_comments],
        'stage_history': [h.to_dict() for h in history],
    })

@app.route('/api/requests', methods=['POST'])
@permission_required(CREATE_REQUEST)
def create_request():
    data = get_json_body()

    subject = (data.get('subject') or '').strip()
    if not subject:
        abort(400, description='Subject is required.')

    maintenance_for = data.get('maintenance_for') or 'EQUIPMENT'
    maintenance_type = data.get('maintenance_type') or 'CORRECTIVE'
    stage = data.get('stage') or 'NEW_REQUEST'
    if maintenance_for not in VALID_MAINTENANCE_FOR:
        abort(400, description="'maintenance_for' must be EQUIPMENT or WORKCENTER.")
    if maintenance_type not in VALID_MAINTENANCE_TYPES:
        abort(400, description="'maintenance_type' must be CORRECTIVE or PREVENTIVE.")
    if stage not in STAGES:
        abort(400, description=f"'stage' must be one of: {', '.join(STAGES)}")
    # Only actors who may move requests between stages can file one past NEW_REQUEST
    if not has_permission(current_user, UPDATE_REQUEST_STAGE):
        stage = 'NEW_REQUEST'

    # Filing on someone else's behalf would forge ownership; only actors who see everything may do it
    created_by_user_id = current_user.id
    if data.get('created_by_user_id') and has_permission(current_user, VIEW_ALL_REQUESTS):
        created_by_user_id = parse_optional_int(data.get('created_by_user_id'), 'created_by_user_id')

    new_request = MaintenanceRequest(
        subject=subject,
        created_by_user_id=created_by_user_id,
        maintenance_for=maintenance_for,
        maintenance_type=maintenance_type,
        equipment_id=parse_optional_int(data.get('equipment_id'), 'equipment_id'),
        workcenter_id=parse_optional_int(data.get('workcenter_id'), 'workcenter_id'),
        category_id=parse_optional_int(data.get('category_id'), 'category_id'),
        team_id=parse_optional_int(data.get('team_id'), 'team_id'),
        technician_id=parse_optional_int(data.get('technician_id'), 'technician_id'),
        request_date=parse_optional_date(data.get('request_date'), 'request_date') or utcnow().date(),
        scheduled_at=parse_scheduled_at(data.get('scheduled_at')),
        duration_minutes=parse_optional_int(data.get('duration_minutes'), 'duration_minutes') or 0,
        priority=parse_optional_int(data.get('priority'), 'priority') or 2,
        stage=stage,
        blocked=bool(data.get('blocked', False)),
        company=app.config['DEFAULT_COMPANY'],
    )

    db.session.add(new_request)
    error = commit_or_error('create_request')
    if error:
        return error
    app.logger.info("Request #%s created by user %s", new_request.id, current_user.id)
    return jsonify({'message': 'Request created', 'data': new_request.to_dict()})

@app.route('/api/requests/<int:request_id>/stage', methods=['PUT'])
@permission_required(UPDATE_REQUEST_STAGE)
def update_request_stage(request_id):
    maintenance_request = db.get_or_404(MaintenanceRequest, request_id)

    # Action check passed; technicians must also be the assigned technician
    if not can_access_request(current_user, maintenance_request):
        abort(403, description='You can only update requests assigned to you')

    data = get_json_body()
    new_stage = data.get('stage')
    if new_stage not in STAGES:
        return jsonify({'message': f"'stage' must be one of: {', '.join(STAGES)}"}), 400

    from_stage = maintenance_request.stage
    maintenance_request.stage = new_stage
    if 'blocked' in data:
        maintenance_request.blocked = bool(data.get('blocked'))

    # The audit row commits together with the stage change, or neither does
    if new_stage != from_stage:
        db.session.add(RequestStageHistory(
            request_id=maintenance_request.id,
            from_stage=from_stage,
            to_stage=new_stage,
            changed_by_user_id=current_user.id
        ))

    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        app.logger.exception("Stage update for request #%s failed; nothing was saved", request_id)
        return jsonify({'message': 'Stage could not be updated because the change could not be recorded.'}), 500

    app.logger.info("Request #%s moved %s -> %s by user %s", request_id, from_stage, new_stage, current_user.id)
    return jsonify({'message': 'Stage updated', 'data': maintenance_request.to_dict()})

@app.route('/api/requests/<int:request_id>/notes', methods=['POST'])
@permission_required(ADD_NOTES)
def add_request_note(request_id):
    maintenance_request = db.get_or_404(MaintenanceRequest, request_id)

    # Employees may only annotate requests they raised
    if not can_access_request(current_user, maintenance_request):
        abort(403, description='You can only add notes to your own requests')

    note = (get_json_body().get('note') or '').strip()
    if not note:
        abort(400, description='Note text is required.')

    entry = RequestNote(request_id=maintenance_request.id, note=note, created_by_user_id=current_user.id)
    db.session.add(entry)
    error = commit_or_error('add_request_note')
    if error:
        return error
    return jsonify({'message': 'Note added', 'data': entry.entry_dict('note')})

@app.route('/api/requests/<int:request_id>/instructions', methods=['POST'])
@permission_required(ADD_INSTRUCTIONS)
def add_request_instruction(request_id):
    maintenance_request = db.get_or_404(MaintenanceRequest, request_id)

    instruction = (get_json_body().get('instruction') or '').strip()
    if not instruction:
        abort(400, description='Instruction text is required.')

    entry = RequestInstruction(request_id=maintenance_request.id, instruction=instruction,
                               created_by_user_id=current_user.id)
    db.session.add(entry)
    error = commit_or_error('add_request_instruction')
    if error:
        return error
    return jsonify({'message': 'Instruction added', 'data': entry.entry_dict('instruction')})

@app.route('/api/requests/<int:request_id>/worksheet', methods=['POST'])
@permission_required(ADD_WORKSHEET)
def add_worksheet_comment(request_id):
    maintenance_request = db.get_or_404(MaintenanceRequest, request_id)

    comment = (get_json_body().get('comment') or '').strip()
    if not comment:
        abort(400, description='Comment text is required.')

    entry = RequestWorksheetComment(request_id=maintenance_request.id, comment=comment,
                                    created_by_user_id=current_user.id)
    db.session.add(entry)
    error = commit_or_error('add_worksheet_comment')
    if error:
        return error
    return jsonify({'message': 'Worksheet comment added', 'data': entry.entry_dict('comment')})

@app.route('/api/requests/<int:request_id>', methods=['DELETE'])
@permission_required(DELETE_REQUEST)
def delete_request(request_id):
    maintenance_request = db.get_or_404(MaintenanceRequest, request_id)

    # Notes, instructions and worksheet entries cascade; stage history is kept
    db.session.delete(maintenance_request)
    error = commit_or_error('delete_request')
    if error:
        return error
    app.logger.info("Request #%s deleted by user %s", request_id, current_user.id)
    return jsonify({'message': 'Request deleted'})

# --- WORK CENTER ROUTES ---

@app.route('/api/workcenters')
@permission_required(MANAGE_WORKCENTERS)
def manage_workcenters():
    workcenters = WorkCenter.query.order_by(WorkCenter.name).all()
    return jsonify([w.to_dict() for w in workcenters])

@app.route('/api/workcenters', methods=['POST'])
@permission_required(MANAGE_WORKCENTERS)
def add_workcenter():
    data = get_json_body()
    name = (data.get('name') or '').strip()
    if not name:
        abort(400, description='Work center name is required')

    def optional_text(field):
        value = data.get(field)
        return (value.strip() or None) if isinstance(value, str) else None

    workcenter = WorkCenter(
        name=name,
        code=optional_text('code'),
        tag=optional_text('tag'),
        alternative_workcenters=optional_text('alternative_workcenters'),
        cost_per_hour=parse_optional_number(data.get('cost_per_hour'), 'cost_per_hour'),
        capacity=parse_optional_number(data.get('capacity'), 'capacity'),
        time_efficiency=parse_optional_number(data.get('time_efficiency'), 'time_efficiency'),
        oee_target=parse_optional_number(data.get('oee_target'), 'oee_target'),
    )
    db.session.add(workcenter)
    error = commit_or_error('add_workcenter')
    if error:
        return error
    return jsonify({'message': 'Work center created successfully', 'data': workcenter.to_dict()})

# --- TEAM ROUTES ---

@app.route('/api/teams')
@permission_required(MANAGE_TEAMS)
def manage_teams():
    teams = Team.query.options(joinedload(Team.members)).order_by(Team.name).all()
    return jsonify([{
        'id': team.id,
        'name': team.name,
        'company': team.company,
        'members': ', '.join(sorted(m.name for m in team.members)) or 'No members',
    } for team in teams])

@app.route('/api/teams/meta')
@login_required
def team_meta():
    users = User.query.order_by(User.name).all()
    return jsonify({'users': [{'id': u.id, 'name': u.name, 'role': u.role} for u in users]})

@app.route('/api/teams', methods=['POST'])
@permission_required(MANAGE_TEAMS)
def add_team():
    data = get_json_body()
    name = (data.get('name') or '').strip()
    if not name:
        abort(400, description='Team name is required')

    new_team = Team(name=name, company=data.get('company') or app.config['DEFAULT_COMPANY'])

    # Blank or non-numeric ids are dropped; ids with no matching user are ignored
    member_ids = data.get('member_ids') or []
    if isinstance(member_ids, list):
        member_ids = {int(m) for m in member_ids if str(m).strip().isdecimal() and str(m).strip().isascii()}
        if member_ids:
            new_team.members = User.query.filter(User.id.in_(member_ids)).all()

    db.session.add(new_team)
    error = commit_or_error('add_team')
    if error:
        return error
    return jsonify({'message': 'Team created successfully', 'data': {
        'id': new_team.id,
        'name': new_team.name,
        'company': new_team.company,
        'member_ids': sorted(m.id for m in new_team.members),
    }})

# --- USER MANAGEMENT ROUTES ---

@app.route('/api/users')
@permission_required(CHANGE_USER_ROLES)
def manage_users():
    users = User.query.order_by(User.name).all()
    return jsonify([u.to_dict() for u in users])

@app.route('/api/users/<int:user_id>/role', methods=['PUT'])
@permission_required(CHANGE_USER_ROLES)
def change_user_role(user_id):
    role = get_json_body().get('role')
    if role not in ROLES:
        abort(400, description=f"Invalid role. Must be one of: {', '.join(ROLES)}")

    user = db.get_or_404(User, user_id)
    previous_role = user.role
    user.role = role
    error = commit_or_error('change_user_role')
    if error:
        return error
    app.logger.info("User %s role changed %s -> %s by user %s", user.id, previous_role, role, current_user.id)
    return jsonify({'message': 'User role updated', 'data': user.to_dict()})

# --- SYSTEM ROUTES ---

@app.route('/api/health')
def health():
    return jsonify({'status': 'ok', 'message': 'GearGuard API is running'})

# --- CLI CONFIGURATION ---

@app.cli.command("init-db")
def init_db():
    """Drops and recreates the database, then seeds a default admin user."""
    db.drop_all()
    db.create_all()
    print("Database tables created.")

    admin_email = os.getenv('ADMIN_EMAIL', 'admin@example.com')
    admin_user = User(
        email=admin_email,
        name='Default Admin',
        role='ADMIN'
    )
    admin_user.set_password(os.getenv('ADMIN_PASSWORD', 'admin123'))
    admin_user.confirm_email()
    db.session.add(admin_user)
    db.session.commit()
    print(f"Default admin user ({admin_email}) created.")

@app.cli.command("delete-db")
def delete_db():
    db.drop_all()
    print("Database tables deleted.")

if __name__ == '__main__':
    app.run(debug=os.getenv('FLASK_DEBUG', 'false').lower() in ['true', '1'])
