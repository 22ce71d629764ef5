"""Pydantic schemas for authenticated identities."""
from pydantic import BaseModel, ConfigDict, Field


class Identity(BaseModel):
    """Verified user identity carried by a credential token.

    Produced once per connection by the session authenticator and immutable
    for the life of that connection.

    Attributes:
        userId: Stable user identifier issued by the identity provider.
        username: Display name.
        email: Account email address.
    """
    model_config = ConfigDict(frozen=True)

    userId: str = Field(..., min_length=1, description="Unique user ID")
    username: str = Field(default="", description="Display name")
    email: str = Field(default="", description="Account email")
