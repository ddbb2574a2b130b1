"""
Correspondent Banking Settlement

Nostro/vostro account settlement between correspondent banks with
FX conversion, Decimal arithmetic and an append-only transaction journal.
"""

__version__ = "1.0.0"
