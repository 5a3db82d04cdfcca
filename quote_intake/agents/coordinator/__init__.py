"""Quotation Workflow Coordinator Module"""
from .coordinator import QuotationCoordinator
from .graph import EmailState, OUTCOME_LABELS, build_email_graph

__all__ = ["QuotationCoordinator", "EmailState", "OUTCOME_LABELS", "build_email_graph"]
