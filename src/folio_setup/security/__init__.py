"""Secret handling for the setup workflow."""

from .secrets import AccessTokenHolder

__all__ = [
    'AccessTokenHolder',
]
