"""
Exceptions raised by the ndgrad engine.

All shape and dimension problems are detected eagerly, at the operation that
caused them, and are never coerced or retried.
"""


class NDGradError(Exception):
    """Base class for every error raised by ndgrad."""


class ShapeError(NDGradError, ValueError):
    """
    Raised when shapes cannot be combined.

    Covers rank mismatches, incompatible broadcasts, and buffers whose length
    disagrees with the product of their shape.
    """


class DimensionError(NDGradError, ValueError):
    """Raised when matmul operands have rank < 2 or disagreeing inner dimensions."""


class ArityError(NDGradError, TypeError):
    """Raised when an operation receives the wrong number of inputs."""
