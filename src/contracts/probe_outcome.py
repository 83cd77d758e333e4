from typing import Optional

from pydantic import BaseModel


class ProbeOutcome(BaseModel):
    """
    Result of a single liveness probe against the primary backend.
    """

    online: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
