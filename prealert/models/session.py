from typing import Literal

from pydantic import AliasChoices, BaseModel, Field

Role = Literal["hospital", "ambulance", "admin"]


class LoginRequest(BaseModel):
    identifier: str = Field(validation_alias=AliasChoices("identifier", "username", "email"))
    password: str


class SessionInfo(BaseModel):
    user_id: str
    username: str
    role: Role
    linked_entity: str | None = None
    token: str | None = None


class AppUser(BaseModel):
    id: str
    username: str
    auth_uid: str | None = None
    role: Role
    linked_entity: str | None = None
