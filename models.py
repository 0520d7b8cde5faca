import datetime
import enum

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, String

from database import Base


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


class LinkPrecedence(str, enum.Enum):
    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"


# Contact model
class Contact(Base):
    __tablename__ = "contacts"
    id = Column(Integer, primary_key=True, index=True)
    phoneNumber = Column(String(255), nullable=True, index=True)
    email = Column(String(255), nullable=True, index=True)
    linkedId = Column(Integer, ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True, index=True)
    linkPrecedence = Column(
        Enum(LinkPrecedence, name="link_precedence"),
        nullable=False,
        default=LinkPrecedence.PRIMARY,
    )
    createdAt = Column(DateTime, nullable=False, default=utcnow)
    updatedAt = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    deletedAt = Column(DateTime, nullable=True)

    @property
    def is_primary(self):
        return self.linkPrecedence == LinkPrecedence.PRIMARY

    def __repr__(self):
        return (
            f"<Contact id={self.id} email={self.email!r} phoneNumber={self.phoneNumber!r} "
            f"{self.linkPrecedence.value if self.linkPrecedence else None} linkedId={self.linkedId}>"
        )
