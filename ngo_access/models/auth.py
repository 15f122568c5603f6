from pydantic import BaseModel


class MeResponse(BaseModel):
    user_id: str
    email: str | None
    scope: str | None
    role: str | None
    state: str
    permissions: list[str]
