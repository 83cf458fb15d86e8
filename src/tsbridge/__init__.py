"""LSP bridge for the TypeScript tsserver."""

from tsbridge.exceptions import BridgeError, NeverThrown
from tsbridge.invariants import never

__all__ = ["__version__", "BridgeError", "NeverThrown", "never"]

__version__ = "0.1.0"
