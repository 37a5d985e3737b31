"""Response value object returned by every CloudflareSolver request."""

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass
class Response:
    """Standardized HTTP response from a dispatched request."""

    status_code: int
    text: str
    headers: dict[str, str] = field(default_factory=dict)
    url: str | None = None

    def header(self, name: str) -> str | None:
        """Get a header value, case-insensitively."""
        value = self.headers.get(name)
        if value is not None:
            return value
        lowered = name.lower()
        for key, val in self.headers.items():
            if key.lower() == lowered:
                return val
        return None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        """Parse response body as JSON."""
        return json.loads(self.text)
