# scripts/reset_db.py

from sqlmodel import SQLModel

from proposalai.config import settings
from proposalai.database import create_db_engine, init_db

if __name__ == "__main__":
    engine = create_db_engine(settings.DB_URL)
    init_db(engine)
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    print("✅ Database reset successfully.")
