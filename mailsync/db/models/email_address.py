from sqlalchemy import Column, String, Integer, ForeignKey, UniqueConstraint
from mailsync.db.session import Base

class EmailAddress(Base):
    __tablename__ = "email_addresses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    connection_id = Column(String, ForeignKey("connections.id"), index=True, nullable=False)

    address = Column(String, nullable=False)  # normalised lower-case
    name = Column(String, nullable=True)
    raw = Column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint("connection_id", "address", name="uq_email_addresses_connection_address"),
    )
