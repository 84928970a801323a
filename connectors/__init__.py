"""
connectors — Notion access through the Alloy credential intermediary.

Provides:
  • OAuth grant lifecycle (initiate → callback → code exchange)
  • Connection listing, probing and selection
  • Action execution with bounded retries for transient failures
  • Notion page/database helpers on top of the generic executor

Alloy holds the third-party tokens; this package only ever holds connection ids.
"""
