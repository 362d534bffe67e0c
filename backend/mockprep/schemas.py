from pydantic import BaseModel, Field


class StartInterviewRequest(BaseModel):
    kind: str = "mixed"
    question_count: int = Field(default=4, ge=1, le=8)


class TranscriptChunkRequest(BaseModel):
    token: str
    text: str


class CodeBufferRequest(BaseModel):
    code: str = ""


class GrantPrepsRequest(BaseModel):
    preps: int | None = Field(default=None, ge=1, le=100)
    package_id: str | None = None


class BalanceResponse(BaseModel):
    user_id: str
    remaining: int
    total_purchased: int


class PrepPackageResponse(BaseModel):
    package_id: str
    name: str
    preps: int
    price_usd: float
    popular: bool = False
    features: list[str] = []


class SessionViewResponse(BaseModel):
    state: str
    session_id: str | None = None
    remaining_seconds: int
    current_question: dict | None = None
    question_position: int
    question_total: int
    answer_buffer: str = ""
    code_buffer: str | None = None
    is_recording: bool = False
    recording_token: str | None = None
    remaining_balance: int | None = None
    legal_actions: list[str]
    banner: str | None = None
    needs_purchase: bool = False


class TranscriptAcceptedResponse(BaseModel):
    accepted: bool
    answer_buffer: str = ""


class HistoryResponse(BaseModel):
    items: list[dict]
    summary: dict
