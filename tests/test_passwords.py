import re

from utils.passwords import (
    MIN_PASSWORD_LENGTH, WORD_LISTS, generate_password, generate_passwords,
    password_file_name, validate_password
)


def test_generated_password_is_built_from_word_lists():
    all_words = {w for words in WORD_LISTS.values() for w in words}
    for _ in range(100):
        password = generate_password()
        parts = password.split('-')
        assert len(password) >= MIN_PASSWORD_LENGTH
        assert parts[0] in WORD_LISTS['learning']
        assert parts[1] in WORD_LISTS['positive']
        assert parts[2] in WORD_LISTS['descriptive']
        assert all(p in all_words for p in parts[3:])


def test_generate_passwords_returns_distinct_values():
    passwords = generate_passwords(20)
    assert len(passwords) == 20
    assert len(set(passwords)) == 20


def test_validate_password():
    assert validate_password('') == (False, 'Password is required')
    assert validate_password('short') == (False, 'Password must be at least 12 characters long')
    assert validate_password('long-enough-password') == (True, None)
    assert validate_password('eightchr', min_length=8) == (True, None)


def test_password_file_name():
    assert re.fullmatch(r'passwords-GF01-\d{14}\.csv', password_file_name('GF01'))
