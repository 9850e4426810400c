"""Pydantic schemas for approval workflow and review APIs."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field


class StepRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    order: int = Field(ge=1)
    role: str
    assigned_user_id: Optional[str] = None
    require_all_users_in_role: bool = False


class WorkflowCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: Optional[str] = Field(default=None, max_length=500)
    steps: List[StepRequest]


class WorkflowUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = Field(default=None, max_length=500)
    is_active: Optional[bool] = None
    steps: Optional[List[StepRequest]] = None


class StepResponse(BaseModel):
    id: str
    name: str
    order: int
    role: str
    assigned_user_id: Optional[str]
    require_all_users_in_role: bool


class WorkflowResponse(BaseModel):
    id: str
    team_id: str
    name: str
    description: Optional[str]
    is_active: bool
    steps: List[StepResponse]


class RoleMemberResponse(BaseModel):
    membership_id: str
    user_id: str
    email: str
    name: str


class SubmitRequest(BaseModel):
    post_id: str
    workflow_id: Optional[str] = None


class ResubmitRequest(BaseModel):
    post_id: str


class ReviewRequest(BaseModel):
    approve: bool
    feedback: Optional[str] = Field(default=None, max_length=2000)


class ReviewResponse(BaseModel):
    status: str
    assignment_id: str
    instance_id: str
    instance_status: str
    current_step_order: Optional[int]


class AssignmentResponse(BaseModel):
    id: str
    instance_id: str
    post_id: str
    step_order: int
    step_name: str
    step_role: str
    review_round: int
    assigned_user_id: Optional[str]
    status: str
    feedback: Optional[str]
    reviewer_label: Optional[str]
    completed_at: Optional[str]


class InstanceResponse(BaseModel):
    id: str
    post_id: str
    workflow_id: str
    status: str
    current_step_order: Optional[int]
    review_round: int
    assignments: List[AssignmentResponse]


class ReviewLinkRequest(BaseModel):
    assignment_id: str
    reviewer_email: EmailStr
    expires_in_hours: Optional[int] = Field(default=None, ge=1)


class ReviewLinkResponse(BaseModel):
    assignment_id: str
    reviewer_email: str
    url: str
    token: str
    expires_at: str


class ReviewLinkVerifyRequest(BaseModel):
    token: str = Field(min_length=16, max_length=128)


class ReviewLinkDetailsResponse(BaseModel):
    assignment_id: str
    post_id: str
    post_content: str
    step_name: str
    step_role: str
    reviewer_email: str
    expires_at: str


class ReviewLinkSubmitRequest(BaseModel):
    token: str = Field(min_length=16, max_length=128)
    approve: bool
    feedback: Optional[str] = Field(default=None, max_length=2000)
    reviewer_name: Optional[str] = Field(default=None, max_length=120)


class StuckAssignmentResponse(BaseModel):
    assignment_id: str
    instance_id: str
    post_id: str
    step_order: int
    step_role: str
    assigned_user_id: Optional[str]
    waiting_hours: float
