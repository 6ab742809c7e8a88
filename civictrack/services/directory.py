# File: civictrack/services/directory.py
from sqlalchemy.orm import Session

from civictrack.core.errors import NotFoundError, ValidationError
from civictrack.models.category import ReportCategory
from civictrack.models.department import Department
from civictrack.models.team import Team
from civictrack.models.user import User


def active_department(db: Session, department_id: int, field: str = "department_id") -> Department:
    dept = db.get(Department, department_id)
    if not dept:
        raise NotFoundError("Department", department_id)
    if not dept.is_active:
        raise ValidationError(f"department {department_id} is not active", field=field)
    return dept


def active_category(db: Session, category_id: int, field: str = "category_id") -> ReportCategory:
    cat = db.get(ReportCategory, category_id)
    if not cat:
        raise NotFoundError("Category", category_id)
    if not cat.is_active:
        raise ValidationError(f"category {category_id} is not active", field=field)
    return cat


def get_team(db: Session, team_id: int) -> Team:
    team = db.get(Team, team_id)
    if not team:
        raise NotFoundError("Team", team_id)
    return team


def get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("User", user_id)
    return user
