"""
SignerNonce Model
Central nonce sequence for the signing account
"""

from sqlalchemy import Column, Integer, String, DateTime

from tradechain.database import Base, utcnow


class SignerNonce(Base):
    """Next nonce to hand out for a signer address."""
    __tablename__ = "signer_nonces"

    address = Column(String(42), primary_key=True)
    next_nonce = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<SignerNonce(address='{self.address}', next_nonce={self.next_nonce})>"
