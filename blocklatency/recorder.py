from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterator

from ape.logging import logger

from .types import ConfirmationMetrics, RunID, iso_format, utc_now

SESSIONS_FOLDER = ".blocklatency-sessions"


class BaseRecorder(ABC):
    """
    Base class used for exporting confirmation metrics to an external data recording process.
    """

    @abstractmethod
    async def init(self, run_id: RunID):
        """
        Handle any async initialization (e.g. creating output locations).
        """

    @abstractmethod
    async def add_result(self, metrics: ConfirmationMetrics):
        """Store the metrics of one confirmed transaction"""


class JSONLineRecorder(BaseRecorder):
    """
    Very basic implementation of BaseRecorder used to handle results by appending to a file
    containing newline-separated JSON entries (https://jsonlines.org/).

    The file structure that this Recorder uses leverages the value of
    `BLOCKLATENCY_RUN_NAME` as well as the connected chain to determine the location
    where files get saved:

        ./.blocklatency-sessions/
          <run-name>/
            <chain id>/
              session-<timestamp>.jsonl  # start time of each run

    Usage:

    To use this recorder, set the following environment variable:

    - `BLOCKLATENCY_RECORD_RESULTS`: `true`

    Recorded sessions can be summarized again with `blocklatency report <session file>`.
    """

    def __init__(self, base_folder: Path | None = None):
        self.base_folder = base_folder or Path.cwd() / SESSIONS_FOLDER

    async def init(self, run_id: RunID):
        data_folder = self.base_folder / run_id.name / str(run_id.chain_id)
        data_folder.mkdir(parents=True, exist_ok=True)

        self.session_results_file = data_folder / f"session-{iso_format(utc_now())}.jsonl"
        logger.info(f"Recording results to {self.session_results_file}")

    async def add_result(self, metrics: ConfirmationMetrics):
        # NOTE: mode `a` means "append to file if exists"
        # NOTE: JSONL convention requires the use of `\n` as newline char
        with self.session_results_file.open("a") as writer:
            writer.write(metrics.model_dump_json())
            writer.write("\n")


def get_metrics(session: Path) -> Iterator[ConfirmationMetrics]:
    """
    Useful function for fetching results and loading them for display.
    """
    with open(session, "r") as file:
        for line in file:
            if line.strip():
                yield ConfirmationMetrics.model_validate_json(line)
