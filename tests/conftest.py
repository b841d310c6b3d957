"""Shared test doubles."""
import pytest


class FakeClock:
    """Manually advanced clock (seconds since epoch)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeMailer:
    """Records sent mail instead of talking SMTP."""

    def __init__(self, configured: bool = True, error: Exception = None):
        self._configured = configured
        self.error = error
        self.sent = []

    @property
    def configured(self) -> bool:
        return self._configured

    async def send(self, to_address: str, subject: str, body: str) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append({"to": to_address, "subject": subject, "body": body})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mailer():
    return FakeMailer()
