import uuid
from datetime import datetime, timedelta, timezone

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import IntegrityError

db = SQLAlchemy()


def utcnow():
    # SQLite drops tzinfo, keep everything naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id():
    return uuid.uuid4().hex


def _isoformat(value):
    return value.isoformat() if value else None


class BridgeRequest(db.Model):
    __tablename__ = 'bridge_requests'

    PENDING = 'PENDING'
    SUBMITTING = 'SUBMITTING'
    SETTLED = 'SETTLED'
    FAILED = 'FAILED'
    STATUSES = (PENDING, SUBMITTING, SETTLED, FAILED)

    id = db.Column(db.String(64), primary_key=True, default=_new_id)
    route = db.Column(db.String(64), nullable=False, index=True)

    source_tx_hash = db.Column(db.String(128), nullable=False)
    source_address = db.Column(db.String(128), nullable=False)
    source_amount = db.Column(db.Float, nullable=False)

    dest_address = db.Column(db.String(64), nullable=False)
    dest_amount = db.Column(db.BigInteger, nullable=False)
    dest_tx_hash = db.Column(db.String(128))
    done = db.Column(db.Boolean, nullable=False, default=False, index=True)

    status = db.Column(db.String(20), nullable=False, default=PENDING)
    idempotency_key = db.Column(db.String(64), unique=True)
    attempt_signature = db.Column(db.String(128))
    attempt_last_valid_height = db.Column(db.BigInteger)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    failure_reason = db.Column(db.Text)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    settled_at = db.Column(db.DateTime)

    @classmethod
    def pending(cls, route):
        """
        Requests the worker still owes a settlement, oldest first.
        FAILED requests wait for an operator instead.
        """
        return (
            cls.query.filter_by(route=route, done=False)
            .filter(cls.status != cls.FAILED)
            .order_by(cls.created_at, cls.id)
            .all()
        )

    @property
    def memo(self):
        return f'bridge-settlement:{self.idempotency_key}'

    def ensure_idempotency_key(self):
        if not self.idempotency_key:
            self.idempotency_key = uuid.uuid4().hex
        return self.idempotency_key

    def record_attempt(self, signature, last_valid_block_height):
        """
        Claim the request for a signed transfer before it leaves the process.

        The row is only written while it is unsettled and has no attempt on
        record, so two runs can never both hold a live transfer for it.
        Returns False when the row no longer qualifies.
        """
        cls = type(self)
        key = self.ensure_idempotency_key()
        result = db.session.execute(
            db.update(cls)
            .where(
                cls.id == self.id,
                cls.done.is_(False),
                cls.attempt_signature.is_(None),
            )
            .values(
                idempotency_key=key,
                status=cls.SUBMITTING,
                attempt_signature=signature,
                attempt_last_valid_height=last_valid_block_height,
                attempts=cls.attempts + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        db.session.expire(self)
        return bool(result.rowcount)

    def clear_attempt(self):
        self.attempt_signature = None
        self.attempt_last_valid_height = None
        if self.status == self.SUBMITTING:
            self.status = self.PENDING

    def mark_settled(self, tx_hash):
        if self.done:
            raise ValueError(f'Bridge request {self.id} is already settled')
        if not tx_hash:
            raise ValueError('Settlement requires a destination transaction hash')
        self.dest_tx_hash = tx_hash
        self.done = True
        self.status = self.SETTLED
        self.failure_reason = None
        self.settled_at = utcnow()

    def mark_failed(self, reason):
        if self.done:
            raise ValueError(f'Bridge request {self.id} is already settled')
        self.status = self.FAILED
        self.failure_reason = reason

    def reset_failed(self):
        """Operator action: give a FAILED request another run."""
        if self.status != self.FAILED:
            raise ValueError(f'Bridge request {self.id} is {self.status}, not {self.FAILED}')
        self.status = self.PENDING
        self.failure_reason = None
        self.attempt_signature = None
        self.attempt_last_valid_height = None

    def to_dict(self):
        return {
            'id': self.id,
            'route': self.route,
            'sourceTxHash': self.source_tx_hash,
            'sourceAddress': self.source_address,
            'sourceAmount': self.source_amount,
            'destTxHash': self.dest_tx_hash,
            'destAddress': self.dest_address,
            'destAmount': self.dest_amount,
            'done': self.done,
            'status': self.status,
            'attempts': self.attempts,
            'failureReason': self.failure_reason,
            'createdAt': _isoformat(self.created_at),
            'updatedAt': _isoformat(self.updated_at),
            'settledAt': _isoformat(self.settled_at),
        }

    def __repr__(self):
        return f'<BridgeRequest {self.id} {self.status}>'


class RunLease(db.Model):
    """
    Time-boxed run lock, one row per bridge route.
    """
    __tablename__ = 'run_leases'

    name = db.Column(db.String(64), primary_key=True)
    holder = db.Column(db.String(64), nullable=False)
    acquired_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)

    @classmethod
    def acquire(cls, name, holder, ttl_seconds):
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds)

        result = db.session.execute(
            db.update(cls)
            .where(cls.name == name)
            .where(db.or_(cls.expires_at <= now, cls.holder == holder))
            .values(holder=holder, acquired_at=now, expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            db.session.commit()
            return True

        if db.session.get(cls, name) is not None:
            db.session.rollback()
            return False

        db.session.add(cls(name=name, holder=holder, acquired_at=now, expires_at=expires_at))
        try:
            db.session.commit()
        except IntegrityError:
            # Another run inserted the first lease row first
            db.session.rollback()
            return False
        return True

    @classmethod
    def renew(cls, name, holder, ttl_seconds):
        now = utcnow()
        result = db.session.execute(
            db.update(cls)
            .where(cls.name == name, cls.holder == holder, cls.expires_at > now)
            .values(expires_at=now + timedelta(seconds=ttl_seconds))
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return bool(result.rowcount)

    @classmethod
    def release(cls, name, holder):
        db.session.execute(
            db.update(cls)
            .where(cls.name == name, cls.holder == holder)
            .values(expires_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.session.commit()

    def __repr__(self):
        return f'<RunLease {self.name} holder={self.holder} expires={self.expires_at}>'
