"""Environment diagnostics shown before an activation is attempted."""

from typing import Optional

from pydantic import BaseModel


class DiagnosticResults(BaseModel):
    """What the environment looks like from the activation core's side."""

    cookies_enabled: bool = False
    logged_in: bool = False
    network_available: bool = False
    account_region: Optional[str] = None
    has_active_subscription: bool = False

    @property
    def problems(self) -> list[str]:
        """Blocking problems, in the order they should be fixed."""
        problems = []
        if not self.network_available:
            problems.append("No network connection available")
        if not self.cookies_enabled:
            problems.append("Cookies are disabled - please enable them to continue")
        if not self.logged_in:
            problems.append("Not logged in to Microsoft account")
        return problems

    @property
    def ok(self) -> bool:
        return not self.problems
