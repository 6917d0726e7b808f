"""
Initialize the database schema.
Run once after the database is up:
    python -m scripts.init_db
"""
from bossmatch import config
from bossmatch.db import Database


def main():
    database = Database(config.DATABASE_URL, echo=config.DB_ECHO)
    print("Creating database tables...")
    database.create_all()
    database.dispose()
    print("Done.")


if __name__ == "__main__":
    main()
