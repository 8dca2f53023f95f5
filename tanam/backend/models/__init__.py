"""SQLAlchemy models."""
from tanam.backend.models.ledger import Balance, Transaction, Payment, LedgerCompensation
from tanam.backend.models.chatbot import Plan, Chatbot

__all__ = [
    "Balance",
    "Transaction",
    "Payment",
    "LedgerCompensation",
    "Plan",
    "Chatbot",
]
