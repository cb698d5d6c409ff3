"""
Org routes — departments, mandals, branches and users.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from chitfund.database import get_db
from chitfund.models import User
from chitfund.schemas import (
    BranchCreate, DepartmentCreate, MandalCreate, OrgNodeResponse, UserCreate, UserResponse,
)
from chitfund.services import groups
from chitfund.services.ledger import fetch

router = APIRouter(prefix="/api/org", tags=["org"])


@router.post("/departments", response_model=OrgNodeResponse, status_code=201)
def create_department(data: DepartmentCreate, db: Session = Depends(get_db)):
    return groups.create_department(db, data.name)


@router.post("/mandals", response_model=OrgNodeResponse, status_code=201)
def create_mandal(data: MandalCreate, db: Session = Depends(get_db)):
    return groups.create_mandal(db, data.name, data.department_id)


@router.post("/branches", response_model=OrgNodeResponse, status_code=201)
def create_branch(data: BranchCreate, db: Session = Depends(get_db)):
    return groups.create_branch(db, data.name, data.mandal_id, data.code)


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(data: UserCreate, db: Session = Depends(get_db)):
    return groups.create_user(db, data.name, data.role, data.branch_id, data.phone)


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(user_id: int, db: Session = Depends(get_db)):
    return fetch(db, User, user_id, "User")
