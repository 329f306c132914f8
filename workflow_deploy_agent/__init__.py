"""Workflow deployment agent: conversation → n8n workflow, isolated per tenant."""

__version__ = "0.1.0"
