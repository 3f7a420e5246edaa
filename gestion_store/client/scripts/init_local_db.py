from gestion_store.client.db_local import LOCAL_DB_DEFAULT_PATH, connect, init_schema

if __name__ == "__main__":
    with connect() as conn:
        init_schema(conn)
    print(f"✅ Base locale initialisée: {LOCAL_DB_DEFAULT_PATH}")
