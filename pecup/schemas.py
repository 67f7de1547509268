"""
Pydantic schemas for the academic resources API.

Request fields are optional where the handlers report their own 400
messages for missing values.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"


class BranchCreate(BaseModel):
    name: Optional[str] = None
    code: Optional[str] = None


class YearCreate(BaseModel):
    batch_year: Optional[int] = None
    display_name: Optional[str] = None


class MappingRequest(BaseModel):
    branchCode: Optional[str] = None
    yearNumber: Optional[int] = None
    semesterNumber: int = 1


class MappingResponse(BaseModel):
    branch_id: str
    year_id: str
    semester_id: str


class CalendarUpdate(BaseModel):
    current_year_id: Optional[str] = None
    current_semester_id: Optional[str] = None


class CalendarAction(BaseModel):
    action: Optional[str] = None


class UsersCountResponse(BaseModel):
    totalUsers: int
    breakdown: dict
    lastUpdated: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    roll_number: Optional[str] = None
    branch_id: Optional[str] = None
    year_id: Optional[str] = None
    semester_id: Optional[str] = None
    section: Optional[str] = None


class StudentCreate(BaseModel):
    roll_number: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    branch_id: Optional[str] = None
    year_id: Optional[str] = None
    semester_id: Optional[str] = None
    section: Optional[str] = None


class SecureUrlResponse(BaseModel):
    secureUrl: str
    expiresAt: str
    expiresInSeconds: int


class AdminCreate(BaseModel):
    email: Optional[str] = None
    role: Optional[str] = None


class AdminUpdate(BaseModel):
    role: Optional[str] = None


class YearMappingsUpdate(BaseModel):
    mappings: Optional[dict] = None


class SemesterPromotionRequest(BaseModel):
    branchId: Optional[str] = None
    yearId: Optional[str] = None
    fromSemesterId: Optional[str] = None
    toSemesterId: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class RepresentativeAssignmentIn(BaseModel):
    branchCode: str
    batchYear: int


class RepresentativeAssign(BaseModel):
    email: str
    assignments: list[RepresentativeAssignmentIn] = Field(default_factory=list)
