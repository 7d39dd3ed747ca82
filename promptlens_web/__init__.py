"""
PromptLens Web - HTTP transport for the suggestion pipeline

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-05
"""

from promptlens_core import __version__
