from sqlalchemy import Column, Integer, String
from sqlalchemy.orm import relationship
from mailsync.db.session import Base

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=True)

    # One user can link several mailboxes
    connections = relationship("Connection", back_populates="user", cascade="all, delete")
