"""
Parametric bootstrap backends.

Available backends:
    CPUBootstrapBackend: thread-parallel refits with joblib
"""

from pymixed.montecarlo.backends.cpu import CPUBootstrapBackend

__all__ = [
    "CPUBootstrapBackend",
]
