from pymongo import ASCENDING, DESCENDING, MongoClient
from dotenv import load_dotenv
import os

load_dotenv()

client = MongoClient(os.getenv("MONGODB_URL", "mongodb://localhost:27017"))
db = client[os.getenv("DATABASE_NAME", "pharmacy")]

def get_database():
    return db

def ensure_indexes(database) -> None:
    """Create the indexes the order/review invariants rely on."""
    # Orders: listing by customer / seller + recency, unique human number
    database.Orders.create_index([("customer_id", ASCENDING), ("created_at", DESCENDING)])
    database.Orders.create_index([("seller_id", ASCENDING), ("created_at", DESCENDING)])
    database.Orders.create_index("order_number", unique=True)
    # Reviews: one top-level per (customer, order, medicine), one reply per review
    database.Reviews.create_index("thread_key", unique=True)
    database.Reviews.create_index([("medicine_id", ASCENDING), ("created_at", DESCENDING)])
    database.Reviews.create_index("parent_id")
