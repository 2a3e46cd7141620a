# 📄 File: scripts/init_db.py

from proposalai.config import settings
from proposalai.database import create_db_engine, init_db

def main():
    engine = create_db_engine(settings.DB_URL)
    init_db(engine)  # <-- create tables as per models
    print("✅ Tables created.")

if __name__ == "__main__":
    main()


# python3 -m scripts.init_db
