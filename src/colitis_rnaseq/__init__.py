"""Exploratory bulk RNA-Seq report for paired ulcerative colitis biopsies."""

__version__ = "0.1.0"
