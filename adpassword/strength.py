"""Password strength helpers: edit distance, zxcvbn score and generation"""
import secrets
import string

from zxcvbn import zxcvbn

# zxcvbn gets slow on very long inputs
ZXCVBN_MAX_LENGTH = 72

SYMBOLS = '!@#$%^&*()_+-=[]{};:,.<>?/'


def levenshtein_distance(source, target):
    """Number of single-character edits needed to turn source into target"""
    if source == target:
        return 0
    if not source:
        return len(target)
    if not target:
        return len(source)

    previous = list(range(len(target) + 1))
    for i, source_char in enumerate(source, 1):
        current = [i]
        for j, target_char in enumerate(target, 1):
            cost = 0 if source_char == target_char else 1
            current.append(min(
                previous[j] + 1,         # deletion
                current[j - 1] + 1,      # insertion
                previous[j - 1] + cost   # substitution
            ))
        previous = current
    return previous[-1]


def password_score(password):
    """zxcvbn score from 0 (too guessable) to 4 (very unguessable)"""
    if not password:
        return 0
    return zxcvbn(password[:ZXCVBN_MAX_LENGTH])['score']


def generate_password(length=16):
    """Random password with at least one upper, lower, digit and symbol"""
    classes = [string.ascii_uppercase, string.ascii_lowercase, string.digits, SYMBOLS]
    length = max(length, len(classes))
    alphabet = ''.join(classes)

    chars = [secrets.choice(chars_class) for chars_class in classes]
    chars += [secrets.choice(alphabet) for _ in range(length - len(classes))]

    # Shuffle so the guaranteed characters are not always in front
    secrets.SystemRandom().shuffle(chars)
    return ''.join(chars)
