from __future__ import annotations

from typing import Optional

from contracts.errors import CollaboratorError, ErrorKind
from contracts.schemas import Location


class StaticLocationProvider:
    """Reports a fixed position, or fails with a fixed error kind."""

    def __init__(self, location: Optional[Location] = None, *, error: Optional[ErrorKind] = None) -> None:
        if location is None and error is None:
            error = ErrorKind.LOCATION_UNAVAILABLE
        self._location = location
        self._error = error

    async def current_location(self) -> Location:
        if self._error is not None:
            raise CollaboratorError("location provider failed", kind=self._error)
        assert self._location is not None
        return self._location
