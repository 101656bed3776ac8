import os

from dotenv import load_dotenv


# Load environment variables
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./trivia.db")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:8501")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Session layout: every category contributes the same number of questions
SESSION_CATEGORIES = [
    c.strip()
    for c in os.getenv("SESSION_CATEGORIES", "Sports,Science,Music,Technology").split(",")
    if c.strip()
]
QUESTIONS_PER_CATEGORY = int(os.getenv("QUESTIONS_PER_CATEGORY", "4"))
WIN_THRESHOLD = float(os.getenv("WIN_THRESHOLD", "80"))


def default_category_quota() -> dict:
    return {category: QUESTIONS_PER_CATEGORY for category in SESSION_CATEGORIES}
