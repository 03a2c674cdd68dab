"""
Enrichment module: text extraction plus AI summary/translation.

Runs out-of-band after a document is created; a slow, absent or failing AI
service leaves the document fully usable with an empty summary.
"""
