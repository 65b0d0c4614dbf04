"""
Participant identification for API requests

The study has no accounts: a participant is identified by the email entered
at the gate, sent back on every request in the X-Participant-Email header.
"""
from typing import Optional

from fastapi import HTTPException, Header


async def get_participant_email(x_participant_email: Optional[str] = Header(None)) -> str:
    """
    Read the participant email from the request headers

    Raises:
        HTTPException: If the header is missing or not an email
    """
    if not x_participant_email:
        raise HTTPException(status_code=401, detail="X-Participant-Email header required")

    email = x_participant_email.strip()
    if "@" not in email:
        raise HTTPException(status_code=401, detail="Invalid participant email")

    return email
