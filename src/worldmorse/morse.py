"""Morse code tables and text <-> code conversion.

Serialized form: symbols are '.' and '-', letters are separated by a single
space and a word boundary is written as '/', e.g. "HI YOU" becomes
".... .. / -.-- --- ..-".
"""
import re

WORD_SEPARATOR = "/"
LETTER_SEPARATOR = " "
_GAP = re.compile(r"  +")

# International Morse Code table
CHAR_TO_MORSE: dict[str, str] = {
    'A': '.-', 'B': '-...', 'C': '-.-.', 'D': '-..', 'E': '.',
    'F': '..-.', 'G': '--.', 'H': '....', 'I': '..', 'J': '.---',
    'K': '-.-', 'L': '.-..', 'M': '--', 'N': '-.', 'O': '---',
    'P': '.--.', 'Q': '--.-', 'R': '.-.', 'S': '...', 'T': '-',
    'U': '..-', 'V': '...-', 'W': '.--', 'X': '-..-', 'Y': '-.--',
    'Z': '--..',
    '0': '-----', '1': '.----', '2': '..---', '3': '...--', '4': '....-',
    '5': '.....', '6': '-....', '7': '--...', '8': '---..', '9': '----.',
    '.': '.-.-.-', ',': '--..--', '?': '..--..', "'": '.----.',
    '!': '-.-.--', '/': '-..-.', '(': '-.--.', ')': '-.--.-',
    '&': '.-...', ':': '---...', ';': '-.-.-.', '=': '-...-',
    '+': '.-.-.', '-': '-....-', '_': '..--.-', '"': '.-..-.',
    '$': '...-..-', '@': '.--.-.',
    ' ': WORD_SEPARATOR,
}

# Reverse lookup: morse notation -> character (word separator excluded)
MORSE_TO_CHAR: dict[str, str] = {
    code: char for char, code in CHAR_TO_MORSE.items() if char != ' '
}


def lookup(code: str) -> str | None:
    """Return the character for one letter's code, or None if unknown."""
    return MORSE_TO_CHAR.get(code)


def encode(text: str) -> str:
    """Encode text into serialized Morse.

    Input is upper-cased. Characters without a table entry encode to nothing,
    and the run of spaces they leave behind becomes a word break.
    """
    codes = [CHAR_TO_MORSE.get(char, "") for char in text.upper()]
    return _GAP.sub(" / ", LETTER_SEPARATOR.join(codes))


def decode(code: str) -> str:
    """Decode serialized Morse into upper-case text.

    '/' and empty tokens become spaces; unknown letter codes decode to nothing.
    """
    out = []
    for token in code.split(LETTER_SEPARATOR):
        if token == WORD_SEPARATOR or token == "":
            out.append(" ")
        else:
            out.append(MORSE_TO_CHAR.get(token, ""))
    return "".join(out)
