# data_manager/models.py
from sqlalchemy import Column, String, DateTime, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class DataEntry(Base):
    __tablename__ = "data_entries"

    id = Column(String(64), primary_key=True)
    name = Column(Text, nullable=False)
    value = Column(Text, nullable=True)
    # JSON-encoded text; decoded by clients, never by the store
    metadata_json = Column("metadata", Text, nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "value": self.value,
            "metadata": self.metadata_json,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
