# workflow.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import List

from .errors import ConfigurationError
from .model import Pipeline

DEFAULT_WORKFLOW = "releaseci_workflow.py"


def find_workflow_files(directory: str | Path = ".") -> List[Path]:
    """releaseci_workflow.py first, then any other *_workflow.py."""
    d = Path(directory)
    default = d / DEFAULT_WORKFLOW
    found = [default] if default.exists() else []
    found.extend(sorted(p for p in d.glob("*_workflow.py") if p.name != DEFAULT_WORKFLOW))
    return found


def discover_workflow(workflow_arg: str | None, directory: str | Path = ".") -> Path:
    if workflow_arg:
        path = Path(workflow_arg)
        if not path.exists() and path.suffix != ".py":
            path = Path(f"{path}.py")
        if not path.exists():
            raise ConfigurationError(f"workflow file not found: {workflow_arg}")
        return path

    files = find_workflow_files(directory)
    if not files:
        raise ConfigurationError(
            "no workflow file found",
            looked_for=f"{DEFAULT_WORKFLOW}, *_workflow.py",
        )
    if files[0].name == DEFAULT_WORKFLOW:
        return files[0]
    if len(files) > 1:
        raise ConfigurationError(
            "multiple workflow files found, pass --workflow",
            candidates=", ".join(str(f) for f in files),
        )
    return files[0]


def load_pipeline(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a python file path.

    The file must define either:
      - pipeline() -> Pipeline
      - PIPELINE = Pipeline(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigurationError(f"workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ConfigurationError(f"workflow must be a .py file, got: {wf_path.name}")

    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=f"releaseci_workflow_{wf_path.stem}")
    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(f"workflow {wf_path.name} failed to load: {e}") from e

    result = None
    if "PIPELINE" in globals_dict:
        result = globals_dict["PIPELINE"]
    elif callable(globals_dict.get("pipeline")):
        try:
            result = globals_dict["pipeline"]()
        except TypeError as e:
            # usually the dsl.pipeline helper imported under the same name
            raise ConfigurationError(
                f"calling pipeline() in {wf_path.name} failed: {e}",
                hint="import the helper as `from releaseci import dsl` and call dsl.pipeline(...)",
            ) from e

    if not isinstance(result, Pipeline):
        raise ConfigurationError(
            f"workflow {wf_path.name} must define pipeline() -> Pipeline or PIPELINE = Pipeline(...)"
        )
    return result
