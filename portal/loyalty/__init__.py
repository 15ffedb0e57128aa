"""
portal/loyalty
--------------
Loyalty ledger evaluator: the stars / birthday rule (engine), its storage
collaborators (ledger) and the transactional service every route uses.
"""
