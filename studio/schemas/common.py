from pydantic import BaseModel


class MessageResponse(BaseModel):
    message: str


class ClearedResponse(BaseModel):
    cleared: int
