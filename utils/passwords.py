# utils/passwords.py
# Memorable password generation for school accounts.

import secrets
from datetime import datetime

MIN_PASSWORD_LENGTH = 12
MIN_SYSTEM_PASSWORD_LENGTH = 8

WORD_LISTS = {
    "learning": [
        "learning", "studying", "reading", "writing", "thinking", "growing",
        "exploring", "discovering", "teaching", "practice", "homework", "lesson",
    ],
    "positive": [
        "bright", "smart", "clever", "quick", "wise", "kind", "happy", "cheerful",
        "friendly", "helpful", "creative", "curious", "brave", "strong", "gentle",
    ],
    "descriptive": [
        "fun", "cool", "awesome", "great", "super", "amazing", "wonderful",
        "fantastic", "excellent", "brilliant", "perfect", "special", "unique",
    ],
    "colors": [
        "blue", "green", "red", "yellow", "purple", "orange", "pink", "silver",
        "golden", "rainbow", "bright", "light", "dark", "clear", "shiny",
    ],
    "nature": [
        "tree", "flower", "star", "moon", "sun", "ocean", "mountain", "river",
        "garden", "forest", "cloud", "rainbow", "butterfly", "bird", "fish",
    ],
}


def generate_password():
    """
    Builds a password like 'reading-brave-awesome'.

    One word each from the learning, positive and descriptive lists, padded
    with extra words from any list until it is MIN_PASSWORD_LENGTH long.
    """
    words = [
        secrets.choice(WORD_LISTS["learning"]),
        secrets.choice(WORD_LISTS["positive"]),
        secrets.choice(WORD_LISTS["descriptive"]),
    ]
    password = "-".join(words)

    categories = list(WORD_LISTS)
    while len(password) < MIN_PASSWORD_LENGTH:
        category = secrets.choice(categories)
        password += "-" + secrets.choice(WORD_LISTS[category])

    return password


def generate_passwords(count):
    """Returns ``count`` distinct passwords."""
    passwords = set()
    while len(passwords) < count:
        passwords.add(generate_password())
    return list(passwords)


def validate_password(password, min_length=MIN_PASSWORD_LENGTH):
    if not password:
        return False, "Password is required"
    if len(password) < min_length:
        return False, f"Password must be at least {min_length} characters long"
    return True, None


def password_file_name(school_code):
    timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
    return f"passwords-{school_code}-{timestamp}.csv"
