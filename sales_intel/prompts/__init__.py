"""
Prompt templates for LLM interactions.
"""

from .sales_analysis import (
    SALES_ANALYSIS_SYSTEM_PROMPT,
    SALES_ANALYSIS_USER_PROMPT,
    build_sales_analysis_prompt,
)

__all__ = [
    "SALES_ANALYSIS_SYSTEM_PROMPT",
    "SALES_ANALYSIS_USER_PROMPT",
    "build_sales_analysis_prompt",
]
