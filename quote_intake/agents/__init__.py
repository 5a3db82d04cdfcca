"""Quote Intake Agents: guardrails, quotation lifecycle and the workflow coordinator."""
