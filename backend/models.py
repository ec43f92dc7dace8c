from pydantic import BaseModel, EmailStr, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel
from datetime import datetime
from typing import Optional, List, Dict, Literal

from voting import as_utc

Role = Literal["student", "admin"]
Department = Literal["Engineering", "AIML", "Science", "Arts", "Commerce", "Management", "Other"]
ElectionStatus = Literal["draft", "active", "completed", "cancelled"]


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True
    )


def check_window(start_date: Optional[datetime], end_date: Optional[datetime]):
    if start_date and end_date and as_utc(end_date) <= as_utc(start_date):
        raise ValueError("End date must be after start date")


def reject_nulls(model: BaseModel, fields):
    """An explicit null on a partial update would clear a required column."""
    for name in fields:
        if name in model.model_fields_set and getattr(model, name) is None:
            raise ValueError(f"{to_camel(name)} cannot be null")


# --- Auth Models ---
class Token(CamelModel):
    access_token: str
    token_type: str
    role: str

class TokenData(BaseModel):
    email: Optional[str] = None
    role: Optional[str] = None

# --- User Models ---
class UserRegister(CamelModel):
    full_name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    student_id: str = Field(..., min_length=1)
    year: str
    department: Department

class UserLogin(CamelModel):
    email: EmailStr
    password: str

class UserUpdate(CamelModel):
    full_name: Optional[str] = None
    email: Optional[EmailStr] = None
    student_id: Optional[str] = None
    department: Optional[Department] = None
    year: Optional[str] = None
    approved: Optional[bool] = None

    @model_validator(mode="after")
    def validate_required(self):
        reject_nulls(self, ("full_name", "email", "student_id", "year", "approved"))
        return self

class UserResponse(CamelModel):
    id: int
    full_name: str
    email: str
    student_id: str
    year: str
    department: Optional[str] = None
    role: Role
    approved: bool
    created_at: Optional[datetime] = None
    votes: Dict[str, Dict[str, List[int]]] = Field(default_factory=dict)

# --- Candidate Models ---
class CandidateIn(CamelModel):
    id: Optional[int] = None  # set when editing an existing candidate
    name: str = Field(..., min_length=1)
    student_id: str = ""
    manifesto: str = ""
    image_url: Optional[str] = None  # plain URL or a base64 data URL
    image_base64: Optional[str] = None

class CandidateUpdate(CamelModel):
    name: Optional[str] = None
    student_id: Optional[str] = None
    manifesto: Optional[str] = None
    image_url: Optional[str] = None
    image_base64: Optional[str] = None

class CandidateResponse(CamelModel):
    id: int
    position_id: int
    name: str
    student_id: str
    manifesto: str
    image_url: str
    votes: int = 0

# --- Position Models ---
class PositionIn(CamelModel):
    id: Optional[int] = None
    title: str = Field(..., min_length=1)
    description: str = ""
    max_selections: int = Field(1, ge=1)
    candidates: List[CandidateIn] = Field(default_factory=list)

class PositionResponse(CamelModel):
    id: int
    election_id: int
    title: str
    description: str
    max_selections: int
    candidates: List[CandidateResponse] = Field(default_factory=list)

# --- Election Models ---
class ElectionCreate(CamelModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    start_date: datetime
    end_date: datetime
    status: ElectionStatus = "draft"
    positions: List[PositionIn] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_window(self):
        check_window(self.start_date, self.end_date)
        return self

class ElectionUpdate(CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: Optional[ElectionStatus] = None
    positions: Optional[List[PositionIn]] = None

    @model_validator(mode="after")
    def validate_window(self):
        reject_nulls(self, ("title", "description", "start_date", "end_date", "status"))
        check_window(self.start_date, self.end_date)
        return self

class ElectionStatusUpdate(BaseModel):
    status: ElectionStatus

class ElectionResponse(CamelModel):
    id: int
    title: str
    description: str
    start_date: datetime
    end_date: datetime
    status: ElectionStatus
    positions: List[PositionResponse] = Field(default_factory=list)
    voter_count: int = 0
    eligible_voter_count: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

# --- Vote Models ---
class VoteRequest(CamelModel):
    position_id: int
    candidate_id: Optional[int] = None
    candidate_ids: Optional[List[int]] = None  # positions allowing several selections

    def selected_candidate_ids(self) -> List[int]:
        if self.candidate_ids:
            return self.candidate_ids
        if self.candidate_id is not None:
            return [self.candidate_id]
        return []

class VoteResponse(CamelModel):
    message: str
    election_id: int
    position_id: int
    candidate_ids: List[int]
    voted_at: datetime
    user_votes: Dict[str, Dict[str, List[int]]]

# --- Result Models ---
class CandidateResult(CamelModel):
    candidate_id: int
    candidate_name: str
    votes: int
    percentage: float

class PositionResult(CamelModel):
    position_id: int
    position_title: str
    max_selections: int
    candidates: List[CandidateResult]
    total_votes: int
    winners: List[int]

class ElectionResult(CamelModel):
    election_id: int
    title: str
    status: ElectionStatus
    is_open: bool
    positions: List[PositionResult]
    total_votes: int
    voter_count: int
    eligible_voters: int
    voter_turnout: Optional[float] = None

class HealthResponse(BaseModel):
    status: Literal["healthy", "unhealthy"]
    database: str
    timestamp: datetime
