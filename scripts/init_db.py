# scripts/init_db.py
from animelog.repo import SqliteRepo
from run import load_config

DB = load_config()["database"]
SqliteRepo(DB).init_schema()
print("initialized db at", DB)
