from pydantic import BaseModel


class StatusResponse(BaseModel):
    status: str
    providers: list[str]
    scheduler_running: bool
