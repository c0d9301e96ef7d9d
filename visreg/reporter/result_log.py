"""result.json output — the regressions that need triage for one build."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from visreg.models.test_result import ResultLog, ResultRecord

logger = logging.getLogger(__name__)


class ResultLogWriter:
    """Owns result.json for a run; rewritten after every appended record."""

    def __init__(self, output_path: Path):
        self.output_path = Path(output_path)
        self.log: ResultLog | None = None

    def initialize(
        self,
        name: str,
        store_base_url: str = "",
        store_build_bucket: str = "",
        base_url: str = "",
    ) -> ResultLog:
        """Start an empty log, replacing any file from a previous run."""
        self.log = ResultLog(
            name=name,
            store_base_url=store_base_url,
            store_build_bucket=store_build_bucket,
            base_url=base_url,
        )
        self.write()
        return self.log

    def append(self, record: ResultRecord) -> None:
        if self.log is None:
            raise RuntimeError("Result log has not been initialized")
        self.log.results.append(record)
        self.write()
        logger.debug("Recorded %s (%s)", record.test, record.result.value)

    def write(self) -> None:
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.output_path, "w") as f:
            json.dump(self.log.model_dump(by_alias=True, mode="json"), f, indent=2, default=str)
