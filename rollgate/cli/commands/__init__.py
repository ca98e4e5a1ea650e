"""CLI commands.

Commands:
- deploy: Release an image to one or more clusters
- rollback: Manually roll one cluster back
- validate: Run the compliance gate only
- report: Render a stored deployment report
"""

from .deploy import deploy
from .report import report
from .rollback import rollback
from .validate import validate

__all__ = ["deploy", "report", "rollback", "validate"]
