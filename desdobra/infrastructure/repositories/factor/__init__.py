from .factor_repository import FactorRepository

__all__ = [
    "FactorRepository",
]
