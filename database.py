from flask_sqlalchemy import SQLAlchemy
from datetime import datetime

db = SQLAlchemy()


class User(db.Model):
    """Identity record for the local auth backend."""
    id = db.Column(db.String(36), primary_key=True)
    email = db.Column(db.String(120), unique=True)
    phone = db.Column(db.String(20), unique=True)
    password = db.Column(db.String(200))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<User {self.id} - {self.email or self.phone}>"


class Document(db.Model):
    """One JSON document of a collection, keyed like a Firestore path."""
    __tablename__ = 'document'

    collection = db.Column(db.String(100), primary_key=True)
    doc_id = db.Column(db.String(128), primary_key=True)
    data = db.Column(db.JSON, nullable=False, default=dict)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class OtpCode(db.Model):
    __tablename__ = 'otp_code'

    id = db.Column(db.String(36), primary_key=True)
    phone = db.Column(db.String(20), nullable=False)
    code_hash = db.Column(db.String(200), nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    used = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
