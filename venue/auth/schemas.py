from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    """POST /auth/login"""
    identifier: str = Field(..., min_length=1)  # email, phone or username
    password: str = Field(..., min_length=1)
    slug: str = Field(..., min_length=1)        # organization slug
