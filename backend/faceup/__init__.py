"""FaceUp: borradores de apuesta, ledger de saldos y liquidación de rondas."""

__version__ = "0.1.0"
