from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models import Account
from ..schemas import MessageCreate, MessageRead, MessageUpdate, PostMessageResult, StepRead
from ..services import programs as programs_svc
from ..services.trigger import TriggerCoordinator, get_coordinator
from ..utils import get_current_account

router = APIRouter(prefix="/api/programSteps", tags=["steps"])


@router.get("/{step_id}", response_model=StepRead)
async def get_step(step_id: int, account: Account = Depends(get_current_account), db: AsyncSession = Depends(get_db)):
    return await programs_svc.get_step(db, account.id, step_id)


@router.get("/{step_id}/messages", response_model=list[MessageRead])
async def list_messages(
    step_id: int,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await programs_svc.list_step_messages(db, account.id, step_id)


@router.post("/{step_id}/messages", response_model=PostMessageResult, status_code=status.HTTP_201_CREATED)
async def post_message(
    step_id: int,
    payload: MessageCreate,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    coordinator: TriggerCoordinator = Depends(get_coordinator),
):
    posted = await programs_svc.post_step_message(db, coordinator, account, step_id, payload.content)
    return PostMessageResult(
        message=MessageRead.model_validate(posted.message),
        first_contribution=posted.first_contribution,
        trigger=posted.trigger.value,
    )


@router.put("/{step_id}/messages/{message_id}", response_model=MessageRead)
async def update_message(
    step_id: int,
    message_id: int,
    payload: MessageUpdate,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await programs_svc.update_step_message(db, account.id, step_id, message_id, payload)
