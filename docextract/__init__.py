"""Document extraction engine.

Rule-based post-processing that turns positioned OCR lines and layout
output into structured records for utility meters, receipts/invoices and
tabular customer documents, plus a deduplicating analysis orchestrator
that bills each unique upload once.
"""
