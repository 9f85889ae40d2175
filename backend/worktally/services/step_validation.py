"""Per-step validation for the onboarding wizard.

Errors block completing a step; warnings are shown but never block.
Field names use the camelCase paths the client renders against
(`admin.firstName`, `team.serviceTypes`).
"""

import re

from worktally.schemas.onboarding import (
    OnboardingState,
    ValidationIssue,
    ValidationResult,
)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
SPECIAL_CHARS_RE = re.compile(r'[!@#$%^&*(),.?":{}|<>]')
MIN_PASSWORD_LENGTH = 8


def password_problems(password: str) -> list[str]:
    """Unmet password requirements, empty when the password is acceptable."""
    problems = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"at least {MIN_PASSWORD_LENGTH} characters")
    if not re.search(r"[A-Z]", password):
        problems.append("an uppercase letter")
    if not re.search(r"[a-z]", password):
        problems.append("a lowercase letter")
    if not re.search(r"[0-9]", password):
        problems.append("a number")
    if not SPECIAL_CHARS_RE.search(password):
        problems.append("a special character")
    return problems


def _duplicates(names: list[str]) -> list[str]:
    seen, dupes = set(), []
    for name in names:
        key = name.strip().lower()
        if key in seen and name not in dupes:
            dupes.append(name)
        seen.add(key)
    return dupes


def validate_organization(state: OnboardingState) -> ValidationResult:
    result = ValidationResult()
    organization = state.organization
    if not (organization.name or "").strip():
        result.errors.append(ValidationIssue(field="organization.name", message="Organization name is required"))
    if not organization.industry:
        result.warnings.append(ValidationIssue(field="organization.industry", message="Industry is not specified"))
    if not organization.size:
        result.warnings.append(
            ValidationIssue(field="organization.size", message="Organization size is not specified")
        )
    return result


def validate_admin(state: OnboardingState) -> ValidationResult:
    result = ValidationResult()
    admin = state.admin
    if not (admin.first_name or "").strip():
        result.errors.append(ValidationIssue(field="admin.firstName", message="First name is required"))
    if not (admin.last_name or "").strip():
        result.errors.append(ValidationIssue(field="admin.lastName", message="Last name is required"))

    email = (admin.email or "").strip()
    if not email:
        result.errors.append(ValidationIssue(field="admin.email", message="Email is required"))
    elif not EMAIL_RE.match(email):
        result.errors.append(ValidationIssue(field="admin.email", message="Invalid email format"))

    if not admin.password:
        result.errors.append(ValidationIssue(field="admin.password", message="Password is required"))
    else:
        problems = password_problems(admin.password)
        if problems:
            result.errors.append(
                ValidationIssue(
                    field="admin.password",
                    message="Password does not meet requirements: needs " + ", ".join(problems),
                )
            )
    return result


def validate_team(state: OnboardingState) -> ValidationResult:
    result = ValidationResult()
    team = state.team
    if team.expected_users is not None and team.expected_users < 0:
        result.errors.append(
            ValidationIssue(field="team.expectedUsers", message="Expected users cannot be negative")
        )

    for field_name, label, names in (
        ("team.departments", "department", team.department_names()),
        ("team.serviceTypes", "service type", team.service_type_names()),
    ):
        for dupe in _duplicates(names):
            result.errors.append(ValidationIssue(field=field_name, message=f"Duplicate {label}: {dupe}"))

    if not team.departments:
        result.warnings.append(
            ValidationIssue(field="team.departments", message="No departments specified, defaults will be used")
        )
    if not team.service_types:
        result.warnings.append(
            ValidationIssue(field="team.serviceTypes", message="No service types specified, defaults will be used")
        )
    return result


def validate_review(state: OnboardingState) -> ValidationResult:
    """Final check before submission; looser on the password than the admin step."""
    organization = validate_organization(state)
    team = validate_team(state)
    admin = state.admin

    errors = list(organization.errors)
    email = (admin.email or "").strip()
    if not email:
        errors.append(ValidationIssue(field="admin.email", message="Admin email is required"))
    elif not EMAIL_RE.match(email):
        errors.append(ValidationIssue(field="admin.email", message="Admin email is invalid"))
    if not admin.password:
        errors.append(ValidationIssue(field="admin.password", message="Admin password is required"))
    elif len(admin.password) < MIN_PASSWORD_LENGTH:
        errors.append(ValidationIssue(field="admin.password", message="Password must be at least 8 characters"))
    if not (admin.first_name or "").strip():
        errors.append(ValidationIssue(field="admin.firstName", message="Admin first name is required"))
    if not (admin.last_name or "").strip():
        errors.append(ValidationIssue(field="admin.lastName", message="Admin last name is required"))
    errors.extend(team.errors)

    return ValidationResult(errors=errors, warnings=organization.warnings + team.warnings)


STEP_VALIDATORS = {
    "organization": validate_organization,
    "admin": validate_admin,
    "team": validate_team,
    "review": validate_review,
}


def validate_step(step_id: str, state: OnboardingState) -> ValidationResult:
    """Validate one step; steps without a form (welcome, complete) always pass."""
    validator = STEP_VALIDATORS.get(step_id)
    return validator(state) if validator else ValidationResult()
