# FinShadow - Threat Intelligence Pipeline
#
# Ingests third-party threat feeds, scores each item for financial-sector
# risk, tracks volume baselines and raises alerts.

__version__ = "0.1.0"
__author__ = "FinShadow Team"
__description__ = "Threat intelligence ingestion and risk scoring pipeline"

__all__ = ["__version__"]
