# models/ssh.py

from pydantic import BaseModel, Field, field_validator
from typing import Optional


class SSHCredentials(BaseModel):
    """
    How to log into a cluster host. The cluster carries one default set;
    a host group may override it (e.g. nodes joined later with another user).

    At least one of `passwd` or `pk` should be usable; with neither set the
    local ssh agent / default identities are used.
    """

    user: str = "root"
    passwd: Optional[str] = None
    pk: Optional[str] = None  # path to a private key file
    pk_passwd: Optional[str] = None
    port: int = Field(default=22, ge=1, le=65535)

    @field_validator("user")
    @classmethod
    def validate_user(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("user must be a non-empty string")
        return val
