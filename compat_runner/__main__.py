"""Command-line entry point: ``python -m compat_runner``."""

from __future__ import annotations

import logging
import sys
from typing import Optional, Sequence

from .config import load_config
from .errors import CompatRunnerError
from .orchestrator import RunOrchestrator
from .params import parse_args

log = logging.getLogger("compat_runner")


def main(argv: Optional[Sequence[str]] = None) -> int:
    params = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if params.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Request lines from the store client are noise at INFO
    logging.getLogger("opensearch").setLevel(logging.WARNING)

    try:
        cfg = load_config(params.config)
        orchestrator = RunOrchestrator(params, cfg)
        if params.init:
            orchestrator.init_store()
            return 0
        orchestrator.run()
    except CompatRunnerError as exc:
        log.error("Error [%s]: %s", exc.phase, exc)
        return 1
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
