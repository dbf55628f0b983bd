from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..background import TaskRunner, get_task_runner
from ..database import get_db
from ..models import Account
from .. import llm_client
from ..schemas import GenerationMetricsRead, ProgramCreate, ProgramRead, StepRead, UnlockStatusRead
from ..services import contributions, programs as programs_svc
from ..utils import get_current_account

router = APIRouter(prefix="/api/programs", tags=["programs"])


@router.post("", response_model=ProgramRead, status_code=status.HTTP_201_CREATED)
async def create_program(
    payload: ProgramCreate,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    generate=Depends(programs_svc.get_program_generator),
    runner: TaskRunner = Depends(get_task_runner),
):
    return await programs_svc.create_program(db, account, payload, generate=generate, task_runner=runner)


@router.get("", response_model=list[ProgramRead])
async def list_programs(account: Account = Depends(get_current_account), db: AsyncSession = Depends(get_db)):
    return await programs_svc.list_programs(db, account.id)


@router.get("/metrics", response_model=GenerationMetricsRead)
async def generation_metrics(account: Account = Depends(get_current_account)):
    return llm_client.metrics.snapshot()


@router.get("/{program_id}", response_model=ProgramRead)
async def get_program(
    program_id: int,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await programs_svc.get_program(db, account.id, program_id)


@router.delete("/{program_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_program(
    program_id: int,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    await programs_svc.soft_delete_program(db, account.id, program_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{program_id}/next_program", response_model=ProgramRead, status_code=status.HTTP_201_CREATED)
async def next_program(
    program_id: int,
    payload: ProgramCreate,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    generate=Depends(programs_svc.get_program_generator),
    runner: TaskRunner = Depends(get_task_runner),
):
    return await programs_svc.create_next_program(
        db, account, program_id, payload, generate=generate, task_runner=runner,
    )


@router.get("/{program_id}/unlock_status", response_model=UnlockStatusRead)
async def unlock_status(
    program_id: int,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    await programs_svc.check_program_access(db, account.id, program_id)
    return await contributions.check_and_update_unlock_status(db, program_id)


@router.get("/{program_id}/programSteps", response_model=list[StepRead])
async def program_steps(
    program_id: int,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await programs_svc.list_steps(db, account.id, program_id)


@router.post("/{program_id}/regenerate", response_model=ProgramRead, status_code=status.HTTP_202_ACCEPTED)
async def regenerate_program(
    program_id: int,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    generate=Depends(programs_svc.get_program_generator),
    runner: TaskRunner = Depends(get_task_runner),
):
    return await programs_svc.regenerate_program(db, account.id, program_id, generate=generate, task_runner=runner)
