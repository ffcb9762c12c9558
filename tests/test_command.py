"""Tests for command library."""

import pytest

from addon_operator.command import Command, run_piped
from addon_operator.exceptions import CommandException, KustomizeException


async def test_command() -> None:
    """Test stdout of a command."""
    result = await run_piped([Command(["echo", "Hello"])])
    assert result == b"Hello\n"


async def test_run_piped_command() -> None:
    """Test running commands piped together."""
    result = await run_piped(
        [
            Command(["echo", "Hello"]),
            Command(["sed", "s/Hello/Goodbye/"]),
        ]
    )
    assert result == b"Goodbye\n"


async def test_failed_command() -> None:
    """Test a failing command."""
    with pytest.raises(CommandException, match="return code 1"):
        await run_piped([Command(["/bin/false"])])


async def test_command_exception_type() -> None:
    """Test a command raises its own exception type."""
    with pytest.raises(KustomizeException, match="return code 1"):
        await run_piped([Command(["/bin/false"], exc=KustomizeException)])


async def test_command_timeout() -> None:
    """Test a command that runs past its timeout."""
    with pytest.raises(CommandException, match="timed out"):
        await run_piped([Command(["sleep", "5"])], timeout=0.1)
