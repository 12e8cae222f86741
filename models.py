from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from flask_bcrypt import Bcrypt
from datetime import datetime, timezone
from flask import current_app
from itsdangerous import URLSafeTimedSerializer as Serializer, BadData
from sqlalchemy import event
from sqlalchemy.orm import Session

from permissions import EMPLOYEE

db = SQLAlchemy()
bcrypt = Bcrypt()

AUTH_TOKEN_SALT = 'auth-token'
EMAIL_TOKEN_SALT = 'verify-email'

# Request lifecycle stages
STAGES = ('NEW_REQUEST', 'IN_PROGRESS', 'REPAIRED', 'SCRAP')
OPEN_STAGES = ('NEW_REQUEST', 'IN_PROGRESS')
CLOSED_STAGES = ('REPAIRED', 'SCRAP')


def utcnow():
    return datetime.now(timezone.utc)


class AuditLogImmutableError(RuntimeError):
    """Raised when code tries to modify or delete a stage history entry."""


class User(UserMixin, db.Model):
    """Represents a user account (profile) in the system."""
    __tablename__ = 'users'
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    name = db.Column(db.String(120), nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=EMPLOYEE)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    email_confirmed_at = db.Column(db.DateTime, nullable=True)
    last_login = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    @property
    def is_confirmed(self):
        return self.email_confirmed_at is not None

    def confirm_email(self):
        if not self.email_confirmed_at:
            self.email_confirmed_at = utcnow()

    def get_auth_token(self):
        """Generates a signed bearer token identifying this user."""
        s = Serializer(current_app.config['SECRET_KEY'], salt=AUTH_TOKEN_SALT)
        return s.dumps({'user_id': self.id})

    @staticmethod
    def verify_auth_token(token, max_age):
        """Returns the user for a valid, unexpired token, else None."""
        s = Serializer(current_app.config['SECRET_KEY'], salt=AUTH_TOKEN_SALT)
        try:
            data = s.loads(token, max_age=max_age)
        except BadData:
            return None
        return db.session.get(User, data.get('user_id'))

    def get_verification_token(self):
        s = Serializer(current_app.config['SECRET_KEY'], salt=EMAIL_TOKEN_SALT)
        return s.dumps({'user_id': self.id, 'email': self.email})

    @staticmethod
    def verify_email_token(token, max_age=86400):
        s = Serializer(current_app.config['SECRET_KEY'], salt=EMAIL_TOKEN_SALT)
        try:
            data = s.loads(token, max_age=max_age)
        except BadData:
            return None
        user = db.session.get(User, data.get('user_id'))
        # A token issued before an email change must not confirm the new address
        if user is None or user.email != data.get('email'):
            return None
        return user

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {'id': self.id, 'email': self.email, 'name': self.name, 'role': self.role}


team_members = db.Table('team_members',
    db.Column('team_id', db.Integer, db.ForeignKey('teams.id'), primary_key=True),
    db.Column('user_id', db.Integer, db.ForeignKey('users.id'), primary_key=True)
)

class Team(db.Model):
    """Represents a maintenance team of users."""
    __tablename__ = 'teams'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    company = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utcnow)

    members = db.relationship('User', secondary=team_members, lazy='subquery',
                              backref=db.backref('teams', lazy=True))

class WorkCenter(db.Model):
    """Represents a work center that maintenance can be requested for."""
    __tablename__ = 'workcenters'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(50))
    tag = db.Column(db.String(100))
    alternative_workcenters = db.Column(db.String(255))
    cost_per_hour = db.Column(db.Float)
    capacity = db.Column(db.Float)
    time_efficiency = db.Column(db.Float)
    oee_target = db.Column(db.Float)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id, 'name': self.name, 'code': self.code, 'tag': self.tag,
            'alternative_workcenters': self.alternative_workcenters,
            'cost_per_hour': self.cost_per_hour, 'capacity': self.capacity,
            'time_efficiency': self.time_efficiency, 'oee_target': self.oee_target,
        }

class EquipmentCategory(db.Model):
    __tablename__ = 'equipment_categories'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)

class Department(db.Model):
    __tablename__ = 'departments'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)

class Location(db.Model):
    __tablename__ = 'locations'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)

class Equipment(db.Model):
    """Represents a piece of equipment."""
    __tablename__ = 'equipment'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    serial_number = db.Column(db.String(100))
    category_id = db.Column(db.Integer, db.ForeignKey('equipment_categories.id'))
    company = db.Column(db.String(255))

    # Who uses it: a single employee or a whole department
    used_by_type = db.Column(db.String(20), nullable=False, default='EMPLOYEE')
    used_by_user_id = db.Column(db.Integer, db.ForeignKey('users.id'))
    used_by_department_id = db.Column(db.Integer, db.ForeignKey('departments.id'))

    maintenance_team_id = db.Column(db.Integer, db.ForeignKey('teams.id'))
    default_technician_id = db.Column(db.Integer, db.ForeignKey('users.id'))
    location_id = db.Column(db.Integer, db.ForeignKey('locations.id'))

    assigned_date = db.Column(db.Date)
    scrap_date = db.Column(db.Date)
    purchase_date = db.Column(db.Date)
    warranty_end_date = db.Column(db.Date)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow)

    # Relationships
    category = db.relationship('EquipmentCategory', backref=db.backref('equipment', lazy=True))
    used_by_user = db.relationship('User', foreign_keys=[used_by_user_id])
    used_by_department = db.relationship('Department', backref=db.backref('equipment', lazy=True))
    maintenance_team = db.relationship('Team', backref=db.backref('equipment', lazy=True))
    default_technician = db.relationship('User', foreign_keys=[default_technician_id])
    location = db.relationship('Location', backref=db.backref('equipment', lazy=True))

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'serial_number': self.serial_number,
            'category_id': self.category_id,
            'category': self.category.name if self.category else None,
            'used_by_type': self.used_by_type,
            'used_by_user_id': self.used_by_user_id,
            'used_by_department_id': self.used_by_department_id,
            'employee': self.used_by_user.name if self.used_by_type == 'EMPLOYEE' and self.used_by_user else None,
            'department': self.used_by_department.name if self.used_by_type == 'DEPARTMENT' and self.used_by_department else None,
            'maintenance_team_id': self.maintenance_team_id,
            'default_technician_id': self.default_technician_id,
            'technician': self.default_technician.name if self.default_technician else None,
            'location_id': self.location_id,
            'location': self.location.name if self.location else None,
            'assigned_date': _isoformat(self.assigned_date),
            'scrap_date': _isoformat(self.scrap_date),
            'purchase_date': _isoformat(self.purchase_date),
            'warranty_end_date': _isoformat(self.warranty_end_date),
            'description': self.description,
            'company': self.company,
        }

class MaintenanceRequest(db.Model):
    """Represents a maintenance request raised against equipment or a work center."""
    __tablename__ = 'maintenance_requests'
    id = db.Column(db.Integer, primary_key=True)
    subject = db.Column(db.String(255), nullable=False)
    company = db.Column(db.String(255))

    maintenance_for = db.Column(db.String(20), nullable=False, default='EQUIPMENT') # EQUIPMENT or WORKCENTER
    maintenance_type = db.Column(db.String(20), nullable=False, default='CORRECTIVE') # CORRECTIVE or PREVENTIVE
    stage = db.Column(db.String(20), nullable=False, default='NEW_REQUEST')
    blocked = db.Column(db.Boolean, nullable=False, default=False)
    priority = db.Column(db.Integer, nullable=False, default=2)
    duration_minutes = db.Column(db.Integer, nullable=False, default=0)

    request_date = db.Column(db.Date, default=lambda: utcnow().date())
    scheduled_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)

    # Ownership: who raised it and who is assigned to fix it
    created_by_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    technician_id = db.Column(db.Integer, db.ForeignKey('users.id'))

    equipment_id = db.Column(db.Integer, db.ForeignKey('equipment.id'))
    workcenter_id = db.Column(db.Integer, db.ForeignKey('workcenters.id'))
    category_id = db.Column(db.Integer, db.ForeignKey('equipment_categories.id'))
    team_id = db.Column(db.Integer, db.ForeignKey('teams.id'))

    # SQLAlchemy Relationships
    created_by = db.relationship('User', foreign_keys=[created_by_user_id], backref='created_requests')
    technician = db.relationship('User', foreign_keys=[technician_id], backref='assigned_requests')
    equipment = db.relationship('Equipment', backref=db.backref('requests', lazy=True))
    workcenter = db.relationship('WorkCenter', backref=db.backref('requests', lazy=True))
    category = db.relationship('EquipmentCategory')
    team = db.relationship('Team', backref=db.backref('requests', lazy=True))

    notes = db.relationship('RequestNote', backref='request', lazy=True,
                            cascade='all, delete-orphan', order_by='RequestNote.created_at.desc()')
    instructions = db.relationship('RequestInstruction', backref='request', lazy=True,
                                   cascade='all, delete-orphan', order_by='RequestInstruction.created_at.desc()')
    worksheet_comments = db.relationship('RequestWorksheetComment', backref='request', lazy=True,
                                         cascade='all, delete-orphan',
                                         order_by='RequestWorksheetComment.created_at.desc()')

    def to_dict(self):
        return {
            'id': self.id,
            'subject': self.subject,
            'stage': self.stage,
            'blocked': self.blocked,
            'priority': self.priority,
            'maintenance_for': self.maintenance_for,
            'maintenance_type': self.maintenance_type,
            'duration_minutes': self.duration_minutes,
            'request_date': _isoformat(self.request_date),
            'scheduled_at': _isoformat(self.scheduled_at),
            'created_at': _isoformat(self.created_at),
            'created_by_user_id': self.created_by_user_id,
            'technician_id': self.technician_id,
            'equipment_id': self.equipment_id,
            'workcenter_id': self.workcenter_id,
            'category_id': self.category_id,
            'team_id': self.team_id,
            'employee': self.created_by.name if self.created_by else None,
            'technician': self.technician.name if self.technician else None,
            'equipment': self.equipment.name if self.equipment else None,
            'workcenter': self.workcenter.name if self.workcenter else None,
            'category': self.category.name if self.category else None,
            'team': self.team.name if self.team else None,
            'company': self.company,
        }


class _RequestEntryMixin:
    """Common columns for text entries attached to a request."""
    id = db.Column(db.Integer, primary_key=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    def entry_dict(self, text_field):
        return {
            'id': self.id,
            text_field: getattr(self, text_field),
            'created_at': _isoformat(self.created_at),
            'created_by': self.created_by.name if self.created_by else None,
        }

class RequestNote(_RequestEntryMixin, db.Model):
    __tablename__ = 'request_notes'
    request_id = db.Column(db.Integer, db.ForeignKey('maintenance_requests.id'), nullable=False)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    note = db.Column(db.Text, nullable=False)
    created_by = db.relationship('User')

class RequestInstruction(_RequestEntryMixin, db.Model):
    __tablename__ = 'request_instructions'
    request_id = db.Column(db.Integer, db.ForeignKey('maintenance_requests.id'), nullable=False)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    instruction = db.Column(db.Text, nullable=False)
    created_by = db.relationship('User')

class RequestWorksheetComment(_RequestEntryMixin, db.Model):
    __tablename__ = 'request_worksheet_comments'
    request_id = db.Column(db.Integer, db.ForeignKey('maintenance_requests.id'), nullable=False)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    comment = db.Column(db.Text, nullable=False)
    created_by = db.relationship('User')


class RequestStageHistory(db.Model):
    """Write-once audit trail of request stage transitions."""
    __tablename__ = 'request_stage_history'
    id = db.Column(db.Integer, primary_key=True)
    # Not a foreign key: history outlives deleted requests
    request_id = db.Column(db.Integer, nullable=False, index=True)
    from_stage = db.Column(db.String(20))
    to_stage = db.Column(db.String(20), nullable=False)
    changed_by_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    changed_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    changed_by = db.relationship('User')

    def to_dict(self):
        return {
            'id': self.id,
            'request_id': self.request_id,
            'from_stage': self.from_stage,
            'to_stage': self.to_stage,
            'changed_by_user_id': self.changed_by_user_id,
            'changed_by': self.changed_by.name if self.changed_by else None,
            'changed_at': _isoformat(self.changed_at),
        }


@event.listens_for(RequestStageHistory, 'before_update')
def _reject_history_update(mapper, connection, target):
    raise AuditLogImmutableError(f"Stage history entry {target.id} cannot be modified.")

@event.listens_for(RequestStageHistory, 'before_delete')
def _reject_history_delete(mapper, connection, target):
    raise AuditLogImmutableError(f"Stage history entry {target.id} cannot be deleted.")

# Bulk query.update()/query.delete() bypass the unit-of-work hooks above.
# Raw SQL on the connection is not covered; enforce that with database grants.
@event.listens_for(Session, 'do_orm_execute')
def _reject_history_bulk_write(orm_execute_state):
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    if any(m.class_ is RequestStageHistory for m in orm_execute_state.all_mappers):
        raise AuditLogImmutableError("Stage history entries cannot be bulk modified or deleted.")


def _isoformat(value):
    return value.isoformat() if value else None
