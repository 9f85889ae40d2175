"""Onboarding wizard routes.

The browser only holds the `onboarding_session` cookie; the wizard state
itself lives in Redis (see OnboardingStore). Every mutating call goes
through the reducer and is persisted before the response is sent.

Route overview:
  GET    /                          load wizard state (password redacted)
  POST   /actions                   dispatch one reducer action
  POST   /steps/{step_id}/complete  validate a step, then complete it and advance
  POST   /submit                    final review, create the admin principal, submit
  DELETE /                          clear the wizard state
"""

import logging

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from worktally.auth.password import hash_password, verify_password
from worktally.database import get_db
from worktally.dependencies import get_onboarding_store
from worktally.middleware.exceptions import BusinessLogicError, ConflictError, ResourceNotFoundError
from worktally.models.public.user import User
from worktally.schemas.auth import UserOut
from worktally.schemas.onboarding import (
    ActionEnvelope,
    CompleteStep,
    OnboardingState,
    SetStep,
    SetValidationErrors,
    SetValidationWarnings,
    StepCompletionResponse,
    SubmitOnboarding,
    ValidationResult,
)
from worktally.services.onboarding_reducer import dispatch
from worktally.services.onboarding_store import OnboardingStore
from worktally.services.step_validation import validate_review, validate_step

logger = logging.getLogger(__name__)

router = APIRouter()


class SubmitResponse(BaseModel):
    state: OnboardingState
    user: UserOut


# ── Helpers ──────────────────────────────────────────────────

async def _record_validation(
    store: OnboardingStore, state: OnboardingState, result: ValidationResult
) -> OnboardingState:
    state = await dispatch(store, state, SetValidationErrors(payload=result.errors))
    return await dispatch(store, state, SetValidationWarnings(payload=result.warnings))


def _reject(result: ValidationResult, message: str) -> BusinessLogicError:
    return BusinessLogicError(
        message,
        error_code="ONBOARDING_VALIDATION_FAILED",
        details={
            "errors": [issue.model_dump() for issue in result.errors],
            "warnings": [issue.model_dump() for issue in result.warnings],
        },
    )


# ── GET / ────────────────────────────────────────────────────

@router.get("/", response_model=OnboardingState)
async def get_onboarding_state(store: OnboardingStore = Depends(get_onboarding_store)):
    """Saved wizard state, or the initial state for a new session."""
    state = await store.load()
    return state.redacted()


# ── POST /actions ───────────────────────────────────────────

@router.post("/actions", response_model=OnboardingState)
async def dispatch_action(
    body: ActionEnvelope,
    store: OnboardingStore = Depends(get_onboarding_store),
):
    state = await store.load()
    state = await dispatch(store, state, body.action)
    return state.redacted()


# ── POST /steps/{step_id}/complete ──────────────────────────

@router.post("/steps/{step_id}/complete", response_model=StepCompletionResponse)
async def complete_step(
    step_id: str,
    store: OnboardingStore = Depends(get_onboarding_store),
):
    """Validate the step's data; on success mark it completed and move on.

    Validation issues are saved into the state either way, so a reload
    shows the same messages.
    """
    state = await store.load()
    index = state.step_index(step_id)
    if index == -1:
        raise ResourceNotFoundError("Onboarding step", step_id)

    result = validate_step(step_id, state)
    state = await _record_validation(store, state, result)
    if not result.is_valid:
        raise _reject(result, "Please correct the errors before continuing")

    state = await dispatch(store, state, CompleteStep(payload=step_id))
    state = await dispatch(store, state, SetStep(payload=index + 1))
    return StepCompletionResponse(state=state.redacted(), validation=result)


# ── POST /submit ────────────────────────────────────────────

@router.post("/submit", response_model=SubmitResponse, status_code=status.HTTP_201_CREATED)
async def submit_onboarding(
    store: OnboardingStore = Depends(get_onboarding_store),
    db: AsyncSession = Depends(get_db),
):
    """Final review: create the admin's account and mark the wizard submitted.

    The organization itself is created on the admin's first login.
    """
    state = await store.load()
    result = validate_review(state)
    state = await _record_validation(store, state, result)
    if not result.is_valid:
        raise _reject(result, "Please correct the following errors before submitting")

    admin = state.admin
    email = admin.email.strip().lower()
    existing = await db.execute(select(User).where(User.email == email))
    user = existing.scalar_one_or_none()
    if user is not None:
        # Re-submitting the same wizard is fine; taking someone else's email is not
        if not verify_password(admin.password, user.hashed_password):
            raise ConflictError("Email already registered", error_code="EMAIL_ALREADY_REGISTERED")
    else:
        user = User(
            email=email,
            hashed_password=hash_password(admin.password),
            full_name=f"{admin.first_name} {admin.last_name}".strip(),
        )
        db.add(user)
        await db.flush()
    await db.commit()
    logger.info(f"Onboarding submitted for {email} (organization {state.organization.name!r})")

    state = await dispatch(store, state, CompleteStep(payload="review"))
    state = await dispatch(store, state, SubmitOnboarding())
    complete_index = state.step_index("complete")
    if complete_index != -1:
        state = await dispatch(store, state, SetStep(payload=complete_index))

    return SubmitResponse(state=state.redacted(), user=UserOut.model_validate(user))


# ── DELETE / ─────────────────────────────────────────────────

@router.delete("/", status_code=status.HTTP_204_NO_CONTENT)
async def clear_onboarding_state(store: OnboardingStore = Depends(get_onboarding_store)):
    await store.clear()
