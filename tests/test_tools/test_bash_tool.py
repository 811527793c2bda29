import asyncio
import os
from pathlib import Path

import pytest

from deckhand.tools.bash import BashTool


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    try:
        # Zombies waiting to be reaped count as dead
        state = Path(f"/proc/{pid}/stat").read_text().rsplit(")", 1)[1].split()[0]
    except OSError:
        return True
    return state != "Z"


async def _wait_for_file(path, timeout: float = 5.0) -> str:
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if path.exists() and path.read_text().strip():
            return path.read_text().strip()
        await asyncio.sleep(0.05)
    raise AssertionError(f"{path} was never written")


@pytest.mark.asyncio
async def test_runs_in_working_directory(tmp_path):
    (tmp_path / "marker.txt").write_text("")
    result = await BashTool().execute(command="ls", _runtime_base_path=tmp_path)
    assert result.success
    assert "marker.txt" in result.content


@pytest.mark.asyncio
async def test_nonzero_exit_and_stderr(tmp_path):
    result = await BashTool().execute(command="echo out; echo err >&2; exit 3", _runtime_base_path=tmp_path)
    assert not result.success
    assert result.error == "Command exited with status 3"
    assert result.content == "out\n[stderr]\nerr"


@pytest.mark.asyncio
async def test_empty_output_and_empty_command(tmp_path):
    assert (await BashTool().execute(command="true", _runtime_base_path=tmp_path)).content == "[no output]"
    assert not (await BashTool().execute(command="   ")).success


@pytest.mark.asyncio
async def test_output_is_truncated(tmp_path, fresh_config):
    fresh_config.tools.bash.max_output_chars = 10
    result = await BashTool().execute(command="printf '%050d' 0", _runtime_base_path=tmp_path)
    assert result.content.startswith("0" * 10)
    assert "truncated" in result.content


@pytest.mark.asyncio
async def test_timeout_kills_command(tmp_path):
    pid_file = tmp_path / "pid"
    result = await BashTool().execute(
        command=f"echo $$ > {pid_file}; exec sleep 30",
        timeout=1,
        _runtime_base_path=tmp_path,
    )
    assert not result.success
    assert result.error == "Command timed out after 1s"
    assert not _alive(int(pid_file.read_text()))


@pytest.mark.asyncio
async def test_abort_event_kills_process_group(tmp_path):
    pid_file = tmp_path / "pid"
    abort = asyncio.Event()
    task = asyncio.create_task(
        BashTool().execute(
            command=f"sleep 30 & echo $! > {pid_file}; wait",
            _runtime_base_path=tmp_path,
            _abort_event=abort,
        )
    )
    child = int(await _wait_for_file(pid_file))
    assert _alive(child)

    abort.set()
    result = await asyncio.wait_for(task, timeout=5)

    assert result.error == "Command aborted"
    await asyncio.sleep(0.1)
    assert not _alive(child)
