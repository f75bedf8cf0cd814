"""
Template rendering into a workspace directory.

Files whose name contains ``.j2.`` are rendered with Jinja2 and written
without the ``.j2`` part (``q-values.j2.yaml`` becomes ``q-values.yaml``).
Every other file is copied unchanged.
"""

import logging
import shutil
from pathlib import Path
from typing import Any, Dict, Union

from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from .errors import EngineError

logger = logging.getLogger(__name__)

TEMPLATE_MARKER = ".j2."


class TemplateRenderer:
    """Renders a template directory with a key/value context."""

    def __init__(self):
        self.jinja_env = SandboxedEnvironment(
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            autoescape=False,
        )

    def render(
        self,
        template_dir: Union[str, Path],
        context: Dict[str, Any],
        output_dir: Union[str, Path],
    ) -> Path:
        source = Path(template_dir)
        destination = Path(output_dir)

        if not source.is_dir():
            raise EngineError(
                f"Cannot copy files from {source} to {destination}",
                f"Template directory {source} does not exist",
            )

        for path in sorted(source.rglob("*")):
            if path.is_dir():
                continue

            relative = path.relative_to(source)
            target = destination / relative

            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                if TEMPLATE_MARKER in path.name:
                    target = target.with_name(path.name.replace(".j2", "", 1))
                    template = self.jinja_env.from_string(path.read_text())
                    target.write_text(template.render(**context))
                else:
                    shutil.copyfile(path, target)
            except TemplateError as e:
                raise EngineError(
                    f"Cannot render template {relative}",
                    f"{type(e).__name__}: {e}",
                )
            except OSError as e:
                raise EngineError(
                    f"Cannot copy files from {source} to {destination}", str(e)
                )

        logger.debug(f"Rendered {source} into {destination}")
        return destination
