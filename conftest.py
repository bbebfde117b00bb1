import io

import pytest
from PIL import Image


def png_bytes(size=(64, 48), color=(200, 10, 10)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


class FakeBackend:
    """Stands in for ModalBackend; outcomes are consumed in call order."""

    def __init__(self, outcomes=None, upscale_outcomes=None):
        self.outcomes = list(outcomes or [])
        self.upscale_outcomes = list(upscale_outcomes or [])
        self.calls = []
        self.upscale_calls = []

    async def generate(self, parts, prompt):
        self.calls.append((parts, prompt))
        outcome = self.outcomes.pop(0) if self.outcomes else png_bytes(color=(0, 200, 0))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def upscale(self, part, target):
        self.upscale_calls.append((part, target))
        outcome = self.upscale_outcomes.pop(0) if self.upscale_outcomes else png_bytes((128, 96))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def source_png():
    return png_bytes((400, 300), (90, 90, 90))
