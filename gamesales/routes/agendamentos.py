"""
Agendamento Routes
Scheduled calls, mirrored to the owner's Google Calendar when connected
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth import get_active_company_id, get_current_user
from ..database import get_db
from ..models import Agendamento, Profile
from ..models_google_calendar import GoogleCalendarIntegration
from ..schemas import AgendamentoCreate, AgendamentoResponse, AgendamentoUpdate
from ..services import crm_service
from ..services import google_calendar_service as gcal
from ..services.google_calendar_service import GoogleCalendarError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agendamentos", tags=["agendamentos"])


def _connected_integration(db: Session, user_id: str) -> Optional[GoogleCalendarIntegration]:
    integration = (
        db.query(GoogleCalendarIntegration)
        .filter(GoogleCalendarIntegration.user_id == user_id)
        .first()
    )
    if integration and integration.auto_sync_enabled:
        return integration
    return None


def _get_agendamento_or_404(db: Session, user: Profile, agendamento_id: str) -> Agendamento:
    agendamento = db.query(Agendamento).filter(Agendamento.id == agendamento_id).first()
    if not agendamento or not crm_service.can_view_user(db, user, agendamento.user_id):
        raise HTTPException(status_code=404, detail="Agendamento not found")
    return agendamento


@router.get("", response_model=list[AgendamentoResponse])
async def list_agendamentos(
    user_id: Optional[str] = Query(None),
    current_user: Profile = Depends(get_current_user),
    company_id: Optional[str] = Depends(get_active_company_id),
    db: Session = Depends(get_db),
):
    seller_ids = [s.id for s in crm_service.visible_sellers(db, current_user, company_id)]
    if user_id:
        if user_id not in seller_ids:
            return []
        seller_ids = [user_id]
    return (
        db.query(Agendamento)
        .filter(Agendamento.user_id.in_(seller_ids))
        .order_by(Agendamento.data_agendamento)
        .all()
    )


@router.post("", response_model=AgendamentoResponse, status_code=201)
async def create_agendamento(
    payload: AgendamentoCreate,
    current_user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    agendamento = Agendamento(
        user_id=current_user.id,
        company_id=current_user.company_id,
        cliente_nome=payload.cliente_nome,
        data_agendamento=payload.data_agendamento,
        observacoes=payload.observacoes,
    )
    db.add(agendamento)
    db.commit()
    db.refresh(agendamento)

    integration = _connected_integration(db, current_user.id) if payload.sync_with_google else None
    if integration:
        try:
            await gcal.create_event(integration, agendamento, db)
        except GoogleCalendarError as e:
            # The agendamento is kept; it can be pushed again with a manual sync
            logger.warning(f"⚠️ Google event not created for agendamento {agendamento.id}: {e.message}")
            gcal.log_sync(db, current_user.id, "create_event", False, e.message, agendamento.id)
        db.refresh(agendamento)

    return agendamento


@router.patch("/{agendamento_id}", response_model=AgendamentoResponse)
async def update_agendamento(
    agendamento_id: str,
    payload: AgendamentoUpdate,
    current_user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    agendamento = _get_agendamento_or_404(db, current_user, agendamento_id)
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(agendamento, field, value)
    db.commit()
    db.refresh(agendamento)

    if agendamento.google_event_id:
        integration = _connected_integration(db, agendamento.user_id)
        if integration:
            try:
                await gcal.update_event(integration, agendamento, db)
            except GoogleCalendarError as e:
                logger.warning(f"⚠️ Google event not updated for agendamento {agendamento.id}: {e.message}")
                gcal.log_sync(db, agendamento.user_id, "update_event", False, e.message, agendamento.id)
            db.refresh(agendamento)

    return agendamento


@router.delete("/{agendamento_id}")
async def delete_agendamento(
    agendamento_id: str,
    current_user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    agendamento = _get_agendamento_or_404(db, current_user, agendamento_id)

    if agendamento.google_event_id:
        integration = _connected_integration(db, agendamento.user_id)
        if integration:
            try:
                await gcal.delete_event(integration, agendamento.google_event_id, db)
            except GoogleCalendarError as e:
                logger.warning(f"⚠️ Google event not deleted for agendamento {agendamento.id}: {e.message}")
                gcal.log_sync(db, agendamento.user_id, "delete_event", False, e.message, agendamento.id)

    db.delete(agendamento)
    db.commit()
    return {"message": "Agendamento deleted successfully"}
