"""
MistakeBook Backend — Route Dependencies
=========================================

What:  FastAPI dependencies shared by the recognition routes.

Identity:
    Sign-in happens in the identity provider in front of this service. A
    request only has to carry a bearer credential; it is not decoded here.
    Questions are owned by a stable digest of that credential, so the raw
    token is never written to the database.
"""

import hashlib
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from mistakebook.exceptions import UnauthorizedError
from mistakebook.services.orchestrator import RecognitionOrchestrator, orchestrator

# auto_error=False: a missing header goes through UnauthorizedError so the
# 401 body has the same shape as every other error
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    credential: str

    @property
    def subject(self) -> str:
        return hashlib.sha256(self.credential.encode("utf-8")).hexdigest()[:32]


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> CurrentUser:
    if credentials is None or not credentials.credentials.strip():
        raise UnauthorizedError()
    return CurrentUser(credential=credentials.credentials.strip())


def get_orchestrator() -> RecognitionOrchestrator:
    """The process-wide orchestrator. Overridden in tests."""
    return orchestrator
