from __future__ import annotations

from typing import Optional, Protocol


class SurfaceRenamer(Protocol):
    """
    Whatever can read and change a surface's visible name.

    current_name() returns None when the surface no longer exists; rename()
    raises a SurfaceError (SurfaceNotFound / RenameFailed) on failure.
    """

    async def current_name(self, surface_id: str) -> Optional[str]: ...

    async def rename(self, surface_id: str, name: str) -> None: ...
