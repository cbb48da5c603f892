import os
import re

from piperun.errors import StepExecutionError
from piperun.models import SecretRef

MASK = "***"

_SECRET_EXPR_RE = re.compile(r"\$\{\{\s*secrets\.([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


class SecretStore:
    """Resolves secret references from the process environment.

    A secret NAME is read from ``PIPERUN_SECRET_NAME`` first, then ``NAME``.
    Values handed out are remembered so captured output can be masked.
    """

    def __init__(self, environ: dict | None = None):
        self._environ = os.environ if environ is None else environ
        self._revealed = set()

    def resolve(self, ref: SecretRef) -> str:
        for key in (f"PIPERUN_SECRET_{ref.name}", ref.name):
            value = self._environ.get(key)
            if value:
                self._revealed.add(value)
                return value
        raise StepExecutionError(f"Secret '{ref.name}' is not available")

    def expand(self, text: str) -> str:
        """Substitute ``${{ secrets.NAME }}`` expressions embedded in text."""
        return _SECRET_EXPR_RE.sub(lambda m: self.resolve(SecretRef(m.group(1))), text)

    def resolve_all(self, values: dict) -> dict:
        result = {}
        for k, v in values.items():
            if isinstance(v, SecretRef):
                result[k] = self.resolve(v)
            elif isinstance(v, str):
                result[k] = self.expand(v)
            else:
                result[k] = v
        return result

    def mask(self, text: str) -> str:
        for value in sorted(self._revealed, key=len, reverse=True):
            text = text.replace(value, MASK)
        return text
