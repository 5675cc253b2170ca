"""Chat ingestion module.

Transport adapters wrap incoming messages as InboundMessage and pass them to
ChatHandler, which stages media and feeds the upload queue.
"""
