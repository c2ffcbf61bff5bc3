"""Shared models and fixtures for the fxengine tests."""

import logging

import pytest
import torch

from fxengine import CompileConfig


class SingleActivation(torch.nn.Module):
    def __init__(self, fn):
        super().__init__()
        self.fn = fn

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.fn(x)


class ConvNet(torch.nn.Module):
    """conv -> relu -> flatten -> linear, every op convertible."""

    def __init__(self):
        super().__init__()
        self.conv = torch.nn.Conv2d(3, 4, kernel_size=3, padding=1)
        self.act = torch.nn.ReLU()
        self.fc = torch.nn.Linear(4 * 8 * 8, 10)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x = self.act(self.conv(x))
        return self.fc(torch.flatten(x, 1))


class Block(torch.nn.Module):
    def __init__(self, hidden: int):
        super().__init__()
        self.proj = torch.nn.Linear(hidden, hidden)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return torch.tanh(self.proj(x))


class SplitModel(torch.nn.Module):
    """Two convertible blocks around an op with no converter."""

    def __init__(self, hidden: int = 16):
        super().__init__()
        self.first = Block(hidden)
        self.second = Block(hidden)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x = self.first(x)
        x = torch.cumsum(x, dim=-1)
        return self.second(x)



class Counter(torch.nn.Module):
    """Scales its input by a buffer it increments on every call."""

    def __init__(self):
        super().__init__()
        self.register_buffer("step", torch.zeros(1))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        self.step.add_(1)
        return x * (self.step * 2)


@pytest.fixture(autouse=True)
def _seed():
    torch.manual_seed(0)


@pytest.fixture
def config():
    """Default fp32 build options."""
    return CompileConfig()


@pytest.fixture
def conv_net():
    """A fully convertible conv/linear model in eval mode."""
    return ConvNet().eval()


@pytest.fixture
def split_model():
    """A model that partitions into two engine segments and one fallback op."""
    return SplitModel().eval()


@pytest.fixture
def fxengine_logs(caplog):
    """Capture warnings and above from the fxengine loggers."""
    caplog.set_level(logging.WARNING, logger="fxengine")
    return caplog


@pytest.fixture
def cuda_device():
    if not torch.cuda.is_available():
        pytest.skip("CUDA is required")
    return torch.device("cuda")
