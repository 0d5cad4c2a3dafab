from config import DB_URL, configure_logging
from db import engine, init_schema

def main():
    configure_logging()
    print(f"Initializing ledger database at: {DB_URL}")
    init_schema(engine)
    print("Tables created: actors, authorization_edges, records, access_logs, blobs")

if __name__ == "__main__":
    main()
