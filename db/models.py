from __future__ import annotations
from sqlalchemy import Column, String, Integer, Boolean, Text, JSON, LargeBinary, UniqueConstraint
from db.database import Base

# Money columns are integer minor units (cents). Timestamps are unix seconds.

class Spell(Base):
    __tablename__ = "spells"
    spell_id = Column(String, primary_key=True, index=True)
    key = Column(String, unique=True, index=True, nullable=False)
    version = Column(Integer, default=1, nullable=False)
    name = Column(String, default="")
    description = Column(Text, default="")
    runtime = Column(String, index=True, nullable=False)       # builtin | api | wasm-module
    config = Column(JSON, default=dict)                         # read only by the matching runtime
    price_cents = Column(Integer, default=0, nullable=False)
    currency = Column(String, default="usd", nullable=False)
    visibility = Column(String, default="public", index=True)   # public | team | private
    owner_id = Column(String, index=True, nullable=False)
    status = Column(String, default="active", index=True)       # active | inactive
    created_ts = Column(Integer, index=True)
    updated_ts = Column(Integer)

class SpellArtifact(Base):
    __tablename__ = "spell_artifacts"
    __table_args__ = (UniqueConstraint("spell_id", "revision", name="uq_spell_artifacts_revision"),)
    artifact_id = Column(String, primary_key=True, index=True)
    spell_id = Column(String, index=True, nullable=False)
    revision = Column(Integer, nullable=False)                  # 1, 2, ... per spell; highest is executed
    sha256 = Column(String, index=True)
    size_bytes = Column(Integer)
    wasm_binary = Column(LargeBinary, nullable=False)
    uploaded_by = Column(String, index=True)
    created_ts = Column(Integer, index=True)

class Cast(Base):
    __tablename__ = "casts"
    cast_id = Column(String, primary_key=True, index=True)
    spell_key = Column(String, index=True)
    spell_id = Column(String, index=True, nullable=True)        # null when the key did not resolve
    spell_version = Column(Integer, nullable=True)
    user_id = Column(String, index=True, nullable=False)
    status = Column(String, index=True, default="queued")       # queued|running|succeeded|failed|timeout
    input_hash = Column(String, index=True, default="")
    cost_cents = Column(Integer, default=0)
    billing_record_id = Column(String, index=True, nullable=True)
    idempotency_key = Column(String, unique=True, nullable=True)
    output = Column(JSON, nullable=True)
    error_code = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    created_ts = Column(Integer, index=True)
    started_ts = Column(Integer, nullable=True)
    finished_ts = Column(Integer, nullable=True)

class BillingRecord(Base):
    __tablename__ = "billing_records"
    billing_record_id = Column(String, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    spell_id = Column(String, index=True, nullable=False)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    payment_ref = Column(String, index=True, nullable=True)     # processor charge reference, "failed" sentinel
    idempotency_key = Column(String, unique=True, nullable=True)
    status = Column(String, index=True, default="pending")      # pending | succeeded | failed
    webhook_corrected = Column(Boolean, default=False)
    error = Column(Text, nullable=True)
    created_ts = Column(Integer, index=True)
    updated_ts = Column(Integer)

class Budget(Base):
    __tablename__ = "budgets"
    user_id = Column(String, primary_key=True, index=True)
    monthly_cap_cents = Column(Integer, nullable=False)
    current_spend_cents = Column(Integer, default=0, nullable=False)
    period_start_ts = Column(Integer, nullable=False)
    updated_ts = Column(Integer)

class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (UniqueConstraint("event_id", name="uq_webhook_events_event_id"),)
    event_id = Column(String, primary_key=True)                 # processor event id, natural dedup key
    type = Column(String, index=True)
    payload = Column(JSON)
    status = Column(String, index=True, default="pending")      # pending | processed | failed
    attempts = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)
    processed_ts = Column(Integer, nullable=True)
    created_ts = Column(Integer, index=True)
    updated_ts = Column(Integer)

class PaymentCustomer(Base):
    __tablename__ = "payment_customers"
    user_id = Column(String, primary_key=True, index=True)
    customer_ref = Column(String, unique=True, index=True)
    updated_ts = Column(Integer)

class AuditLog(Base):
    __tablename__ = "audit_logs"
    audit_id = Column(String, primary_key=True, index=True)
    ts = Column(Integer, index=True)
    user_id = Column(String, index=True)
    action = Column(String, index=True)        # CAST
    target_id = Column(String, index=True)     # spell key
    ref_id = Column(String, index=True)        # cast id
    ok = Column(Boolean, default=False)
    credits = Column(Integer, default=0)       # cents charged
    error = Column(Text, nullable=True)

class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"
    __table_args__ = (UniqueConstraint("key", "endpoint", "scope", name="uq_idempotency_keys_key_endpoint_scope"),)
    idempotency_id = Column(String, primary_key=True, index=True)
    key = Column(String, nullable=False)                        # client Idempotency-Key header
    endpoint = Column(String, nullable=False)                   # e.g. "POST /cast"
    scope = Column(String, index=True, nullable=False)          # user id
    request_hash = Column(String, nullable=False)
    response_status = Column(Integer, nullable=True)            # null while the first request is in flight
    response_body = Column(JSON, nullable=True)
    created_ts = Column(Integer, index=True)
    updated_ts = Column(Integer)
