import uuid
from datetime import datetime, timedelta

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .config import MERCADOPAGO_TRIAL_DAYS
from .database import Base


def generate_uuid():
    """Primary keys are UUID strings, matching the hosted auth user ids"""
    return str(uuid.uuid4())


def default_trial_end():
    """New companies start with a reverse trial of the top plan"""
    return datetime.utcnow() + timedelta(days=MERCADOPAGO_TRIAL_DAYS)


class Company(Base):
    __tablename__ = "companies"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    logo_url = Column(String(500), nullable=True)
    plan = Column(String(50), default="starter", nullable=False)  # starter, plus, pro, enterprise
    subscription_status = Column(
        String(50), default="trialing", nullable=True
    )  # trialing, active, paused, canceled, expired
    trial_ends_at = Column(DateTime, default=default_trial_end, nullable=True)
    # Mercado Pago preapproval and payer identifiers
    mp_subscription_id = Column(String(255), nullable=True, index=True)
    mp_customer_id = Column(String(255), nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    profiles = relationship("Profile", back_populates="company")


class Profile(Base):
    __tablename__ = "profiles"

    # Same id as the hosted auth user (JWT "sub")
    id = Column(String(36), primary_key=True, default=generate_uuid)
    company_id = Column(String(36), ForeignKey("companies.id"), nullable=True, index=True)
    nome = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    avatar_url = Column(String(500), nullable=True)
    role = Column(String(20), default="vendedor", nullable=False)  # vendedor, admin
    is_super_admin = Column(Boolean, default=False, nullable=False)
    # Gamification
    pontos = Column(Integer, default=0, nullable=False)
    nivel = Column(String(20), default="Bronze", nullable=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    company = relationship("Company", back_populates="profiles")

    @property
    def is_admin(self) -> bool:
        return self.role == "admin" or bool(self.is_super_admin)


class Produto(Base):
    __tablename__ = "produtos"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    company_id = Column(String(36), ForeignKey("companies.id"), nullable=True, index=True)
    nome = Column(String(255), nullable=False)
    descricao = Column(Text, nullable=True)
    preco_base = Column(Float, nullable=True)
    ativo = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class Deal(Base):
    __tablename__ = "deals"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    company_id = Column(String(36), ForeignKey("companies.id"), nullable=True, index=True)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("produtos.id"), nullable=True)
    title = Column(String(255), nullable=False)
    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    value = Column(Float, default=0, nullable=False)
    # lead, qualification, proposal, negotiation, closed_won, closed_lost
    stage = Column(String(50), default="lead", nullable=False)
    probability = Column(Integer, default=10, nullable=False)
    notes = Column(Text, nullable=True)
    loss_reason = Column(String(500), nullable=True)
    source = Column(String(50), nullable=True)  # manual, hotmart
    external_id = Column(String(255), nullable=True, index=True)  # e.g. Hotmart transaction

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    activities = relationship("DealActivity", back_populates="deal", cascade="all, delete-orphan")


class DealActivity(Base):
    """Timeline entries shown on the deal page"""

    __tablename__ = "deal_activities"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    deal_id = Column(String(36), ForeignKey("deals.id"), nullable=False, index=True)
    company_id = Column(String(36), nullable=True)
    user_id = Column(String(36), nullable=True)
    activity_type = Column(String(50), nullable=False)  # created, stage_changed, won, lost, field_updated, call, note
    description = Column(String(500), nullable=False)
    old_value = Column(String(255), nullable=True)
    new_value = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    deal = relationship("Deal", back_populates="activities")


class Venda(Base):
    __tablename__ = "vendas"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    company_id = Column(String(36), ForeignKey("companies.id"), nullable=True, index=True)
    cliente_nome = Column(String(255), nullable=False)
    produto_id = Column(String(36), ForeignKey("produtos.id"), nullable=True)
    produto_nome = Column(String(255), nullable=False)
    valor = Column(Float, nullable=False)
    plataforma = Column(String(100), nullable=True)
    forma_pagamento = Column(String(50), nullable=False)  # PIX, Boleto, Cartão de Crédito...
    status = Column(String(20), default="Aprovado", nullable=True)  # Aprovado, Pendente, Reembolsado
    observacoes = Column(Text, nullable=True)
    data_venda = Column(Date, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class Meta(Base):
    """Monthly sales goal of a single seller"""

    __tablename__ = "metas"
    __table_args__ = (UniqueConstraint("user_id", "mes_referencia", name="uq_metas_user_month"),)

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    company_id = Column(String(36), ForeignKey("companies.id"), nullable=True, index=True)
    mes_referencia = Column(Date, nullable=False)  # first day of the month
    valor_meta = Column(Float, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class MetaConsolidada(Base):
    """Monthly sales goal of a whole company"""

    __tablename__ = "metas_consolidadas"
    __table_args__ = (
        UniqueConstraint("company_id", "mes_referencia", name="uq_metas_consolidadas_company_month"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    company_id = Column(String(36), ForeignKey("companies.id"), nullable=False, index=True)
    mes_referencia = Column(Date, nullable=False)
    valor_meta = Column(Float, nullable=False)
    descricao = Column(String(500), nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class Agendamento(Base):
    """Scheduled call, optionally mirrored in Google Calendar"""

    __tablename__ = "agendamentos"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    company_id = Column(String(36), ForeignKey("companies.id"), nullable=True)
    cliente_nome = Column(String(255), nullable=False)
    # Local wall-clock time in GOOGLE_CALENDAR_TIMEZONE
    data_agendamento = Column(DateTime, nullable=False)
    observacoes = Column(Text, nullable=True)
    status = Column(String(20), default="agendado", nullable=False)  # agendado, realizado, cancelado

    google_event_id = Column(String(500), nullable=True, index=True)
    synced_with_google = Column(Boolean, default=False)
    last_synced_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())


class IntegrationConfig(Base):
    """Per-company configuration of inbound sales platforms (Hotmart)"""

    __tablename__ = "integration_configs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    company_id = Column(String(36), ForeignKey("companies.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=True)
    platform = Column(String(50), nullable=False)
    hottok = Column(String(255), nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    company_id = Column(String(36), nullable=True)
    platform = Column(String(50), nullable=False)
    event_type = Column(String(100), nullable=True)
    external_reference = Column(String(255), nullable=True, index=True)
    payload = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False)  # processing, success, error
    error_message = Column(Text, nullable=True)
    processed_deal_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class SyncLog(Base):
    __tablename__ = "sync_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), nullable=True, index=True)
    action = Column(String(50), nullable=False)  # connect, webhook_registered, webhook_sync
    resource_type = Column(String(50), nullable=False)
    resource_id = Column(String(36), nullable=True)
    google_event_id = Column(String(500), nullable=True)
    success = Column(Boolean, default=True, nullable=False)
    error_message = Column(Text, nullable=True)
    synced_at = Column(DateTime, server_default=func.now())


class ProcessedWebhookEvent(Base):
    """Provider event ids already handled, for webhook idempotency"""

    __tablename__ = "processed_webhook_events"
    __table_args__ = (UniqueConstraint("provider", "event_id", name="uq_processed_webhook_event"),)

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(50), nullable=False)
    event_id = Column(String(255), nullable=False)
    created_at = Column(DateTime, server_default=func.now())
