class InvalidInputError(ValueError):
    """Malformed input: too few cells, empty feature subset,
    neighborhood size not smaller than the available population, etc."""


class InsufficientDataError(ValueError):
    """A sample has too few cells to support a robust MAD-based threshold."""
