from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator

from .utils.dates import to_local_naive

DealStage = Literal["lead", "qualification", "proposal", "negotiation", "closed_won", "closed_lost"]


class MessageResponse(BaseModel):
    message: str


# Deal Schemas
class DealCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    value: float = Field(0, ge=0)
    stage: DealStage = "lead"
    probability: int = Field(50, ge=0, le=100)
    notes: Optional[str] = None
    product_id: Optional[str] = None
    loss_reason: Optional[str] = None


class DealUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    value: Optional[float] = Field(None, ge=0)
    stage: Optional[DealStage] = None
    probability: Optional[int] = Field(None, ge=0, le=100)
    notes: Optional[str] = None
    product_id: Optional[str] = None
    loss_reason: Optional[str] = None


class DealNoteCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=500)


class DealActivityResponse(BaseModel):
    id: str
    deal_id: str
    user_id: Optional[str]
    activity_type: str
    description: str
    old_value: Optional[str]
    new_value: Optional[str]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class DealResponse(BaseModel):
    id: str
    company_id: Optional[str]
    user_id: str
    product_id: Optional[str]
    title: str
    customer_name: Optional[str]
    customer_email: Optional[str]
    customer_phone: Optional[str]
    value: float
    stage: str
    probability: int
    notes: Optional[str]
    loss_reason: Optional[str]
    source: Optional[str]
    external_id: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class DealDetailResponse(DealResponse):
    activities: List[DealActivityResponse] = []


# Seller Schemas
class SellerResponse(BaseModel):
    id: str
    nome: str
    email: str
    avatar_url: Optional[str]
    role: str
    company_id: Optional[str]
    pontos: int
    nivel: str

    class Config:
        from_attributes = True


class SellerCreate(BaseModel):
    nome: Optional[str] = None
    email: Optional[str] = None
    send_password: bool = True


# Agendamento Schemas
class AgendamentoCreate(BaseModel):
    cliente_nome: str = Field(..., min_length=1, max_length=255)
    data_agendamento: datetime
    observacoes: Optional[str] = None
    sync_with_google: bool = True

    @field_validator("data_agendamento")
    @classmethod
    def to_local_time(cls, v: datetime) -> datetime:
        # Stored as local wall-clock time
        return to_local_naive(v)


class AgendamentoUpdate(BaseModel):
    cliente_nome: Optional[str] = Field(None, min_length=1, max_length=255)
    data_agendamento: Optional[datetime] = None
    observacoes: Optional[str] = None
    status: Optional[Literal["agendado", "realizado", "cancelado"]] = None

    @field_validator("data_agendamento")
    @classmethod
    def to_local_time(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_local_naive(v) if v else v


class AgendamentoResponse(BaseModel):
    id: str
    user_id: str
    cliente_nome: str
    data_agendamento: datetime
    observacoes: Optional[str]
    status: str
    google_event_id: Optional[str]
    synced_with_google: Optional[bool]
    last_synced_at: Optional[datetime]

    class Config:
        from_attributes = True


# Meta Schemas
class MetaUpsert(BaseModel):
    user_id: str
    mes_referencia: date
    valor_meta: float = Field(..., ge=0)


class MetaConsolidadaUpsert(BaseModel):
    mes_referencia: date
    valor_meta: float = Field(..., ge=0)
    descricao: Optional[str] = None


# Call Schemas
class CallInitiateRequest(BaseModel):
    deal_id: Optional[str] = Field(None, validation_alias=AliasChoices("deal_id", "dealId"))
    seller_phone: Optional[str] = Field(None, validation_alias=AliasChoices("seller_phone", "sellerPhone"))
    customer_phone: Optional[str] = Field(
        None, validation_alias=AliasChoices("customer_phone", "customerPhone")
    )
    mode: Literal["demo", "twilio"] = "demo"


class CallInsightsRequest(BaseModel):
    call_id: Optional[str] = Field(None, validation_alias=AliasChoices("call_id", "callId"))


class CallResponse(BaseModel):
    id: str
    deal_id: str
    user_id: str
    provider: str
    status: str
    seller_phone: Optional[str]
    customer_phone: Optional[str]
    started_at: Optional[datetime]
    ended_at: Optional[datetime]
    duration_seconds: Optional[int]
    recording_url: Optional[str]
    transcript_status: Optional[str]
    transcript_preview: Optional[str]
    last_error: Optional[str]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class CallInsightResponse(BaseModel):
    call_id: str
    deal_id: str
    status: str
    model: str
    summary: Optional[str]
    objections: List[Dict[str, Any]]
    next_steps: List[str]
    action_items: List[str]
    suggested_message: Optional[str]
    suggested_stage: Optional[str]
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True
