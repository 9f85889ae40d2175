"""Onboarding wizard state machine.

`reduce(state, action)` is pure: it never touches storage and always
returns a new OnboardingState. `dispatch()` is what the routes call; it
runs the reducer and persists the result so the wizard survives a
reload at any step without an explicit save.

Invariant kept by every navigation action: exactly one step has
current=True and it is steps[current_step_index].
"""

import logging
from datetime import timedelta
from typing import Callable

from pydantic import BaseModel

from worktally.config import settings
from worktally.schemas.onboarding import (
    CompleteOnboarding,
    CompleteStep,
    LoadSavedState,
    NextStep,
    OnboardingState,
    PreviousStep,
    ResetOnboarding,
    SetStep,
    SetValidationErrors,
    SetValidationWarnings,
    SubmitOnboarding,
    UpdateAdmin,
    UpdateOrganization,
    UpdateTeam,
    default_steps,
    initial_state,
    utcnow,
)

logger = logging.getLogger(__name__)


# ── Helpers ──────────────────────────────────────────────────

def _with_current(state: OnboardingState, index: int, mark_before_completed: bool = False) -> OnboardingState:
    steps = [
        step.model_copy(
            update={
                "current": i == index,
                "completed": True if (mark_before_completed and i < index) else step.completed,
            }
        )
        for i, step in enumerate(state.steps)
    ]
    return state.model_copy(update={"current_step_index": index, "steps": steps})


def _merge(model: BaseModel, payload: dict) -> BaseModel:
    """Shallow-merge a payload (camelCase or snake_case keys) into a model."""
    cls = type(model)
    by_alias = {(info.alias or name): name for name, info in cls.model_fields.items()}
    data = model.model_dump()
    for key, value in payload.items():
        data[by_alias.get(key, key)] = value
    return cls.model_validate(data)


# ── Action handlers ─────────────────────────────────────────

def _next_step(state: OnboardingState, action: NextStep) -> OnboardingState:
    if not state.steps:
        return state
    target = len(state.steps) - 1
    for index in range(state.current_step_index + 1, len(state.steps)):
        if not state.steps[index].completed:
            target = index
            break
    return _with_current(state, target)


def _previous_step(state: OnboardingState, action: PreviousStep) -> OnboardingState:
    if not state.steps:
        return state
    return _with_current(state, max(state.current_step_index - 1, 0))


def _set_step(state: OnboardingState, action: SetStep) -> OnboardingState:
    if not state.steps:
        return state
    index = max(0, min(action.payload, len(state.steps) - 1))
    logger.debug(
        f"Setting step {index} ({state.steps[index].id}) from {state.current_step_index}"
    )
    return _with_current(state, index, mark_before_completed=True)


def _update_organization(state: OnboardingState, action: UpdateOrganization) -> OnboardingState:
    return state.model_copy(update={"organization": _merge(state.organization, action.payload)})


def _update_admin(state: OnboardingState, action: UpdateAdmin) -> OnboardingState:
    return state.model_copy(update={"admin": _merge(state.admin, action.payload)})


def _update_team(state: OnboardingState, action: UpdateTeam) -> OnboardingState:
    return state.model_copy(update={"team": _merge(state.team, action.payload)})


def _set_validation_errors(state: OnboardingState, action: SetValidationErrors) -> OnboardingState:
    validation = state.validation.model_copy(update={"errors": list(action.payload)})
    return state.model_copy(update={"validation": validation})


def _set_validation_warnings(state: OnboardingState, action: SetValidationWarnings) -> OnboardingState:
    validation = state.validation.model_copy(update={"warnings": list(action.payload)})
    return state.model_copy(update={"validation": validation})


def _complete_step(state: OnboardingState, action: CompleteStep) -> OnboardingState:
    index = state.step_index(action.payload)
    if index == -1:
        logger.error(f"Step with id {action.payload} not found")
        return state
    steps = list(state.steps)
    steps[index] = steps[index].model_copy(update={"completed": True})
    return state.model_copy(update={"steps": steps})


def _complete_onboarding(state: OnboardingState, action: CompleteOnboarding) -> OnboardingState:
    steps = [step.model_copy(update={"completed": True}) for step in state.steps]
    return state.model_copy(update={"completed": True, "steps": steps})


def _submit_onboarding(state: OnboardingState, action: SubmitOnboarding) -> OnboardingState:
    expires_at = utcnow() + timedelta(hours=settings.onboarding_state_ttl_hours)
    return state.model_copy(update={"submitted": True, "expires_at": expires_at})


def _load_saved_state(state: OnboardingState, action: LoadSavedState) -> OnboardingState:
    incoming = OnboardingState.model_validate(action.payload)
    data = state.model_dump()
    data.update(incoming.model_dump(exclude_unset=True))
    loaded = OnboardingState.model_validate(data)
    if "steps" not in incoming.model_fields_set or not incoming.steps:
        loaded = loaded.model_copy(update={"steps": default_steps()})
    index = loaded.current_step_index
    if not 0 <= index < len(loaded.steps):
        index = 0
    return _with_current(loaded, index)


def _reset_onboarding(state: OnboardingState, action: ResetOnboarding) -> OnboardingState:
    return initial_state()


_HANDLERS: dict[str, Callable] = {
    "NEXT_STEP": _next_step,
    "PREVIOUS_STEP": _previous_step,
    "SET_STEP": _set_step,
    "UPDATE_ORGANIZATION": _update_organization,
    "UPDATE_ADMIN": _update_admin,
    "UPDATE_TEAM": _update_team,
    "SET_VALIDATION_ERRORS": _set_validation_errors,
    "SET_VALIDATION_WARNINGS": _set_validation_warnings,
    "COMPLETE_STEP": _complete_step,
    "COMPLETE_ONBOARDING": _complete_onboarding,
    "SUBMIT_ONBOARDING": _submit_onboarding,
    "LOAD_SAVED_STATE": _load_saved_state,
    "RESET_ONBOARDING": _reset_onboarding,
}


# ── Public API ───────────────────────────────────────────────

def reduce(state: OnboardingState, action) -> OnboardingState:
    """Apply one action. Unknown action types leave the state unchanged.

    UPDATE_* payloads are validated against the section model as they are
    merged; a value outside an enum (say `industry="spaceflight"`) raises
    pydantic.ValidationError and the input state is left as it was.
    """
    handler = _HANDLERS.get(getattr(action, "type", None))
    if handler is None:
        logger.warning(f"Ignoring unknown onboarding action: {action!r}")
        return state
    new_state = handler(state, action)
    if new_state is state:
        return state
    return new_state.model_copy(update={"last_updated": utcnow()})


async def dispatch(store, state: OnboardingState, action) -> OnboardingState:
    """Reduce and persist. LOAD_SAVED_STATE is not written back."""
    new_state = reduce(state, action)
    if action.type != "LOAD_SAVED_STATE":
        await store.save(new_state)
    return new_state
