import sys
import argparse
import json
import re
from abc import ABC, abstractmethod
from typing import Dict, List, NamedTuple, Optional, Set
from pathlib import Path

__version__ = "1.2.0"

# Base64 alphabet plus the punctuation found in data URIs (":;,-.")
DEFAULT_KEY = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/=:;,-."
DEFAULT_PRESET = "base64"
DEFAULT_SEPARATOR = " "

# Continuous decoding reads one digit per code
CONTINUOUS_MAX_INDEX = 9

# Verbose mode (disabled by default, enabled with --verbose)
VERBOSE = False

def log_info(msg: str):
    """Print info message only if verbose mode is enabled."""
    if VERBOSE:
        print(f"[INFO] {msg}", file=sys.stderr)

def log_warn(msg: str):
    """Print warning message only if verbose mode is enabled."""
    if VERBOSE:
        print(f"[WARN] {msg}", file=sys.stderr)

# ==========================================
#  KEY INSPECTION: KeyMap, Duplicates, Clean
# ==========================================

def build_key_map(key: str) -> Dict[str, int]:
    """
    Map each character of the key to its 1-based position.

    Only the first occurrence of a character counts, so a key with
    repeats still encodes deterministically.
    """
    key_map = {}
    for i, char in enumerate(key):
        if char not in key_map:
            key_map[char] = i + 1
    return key_map

def find_duplicates(key: str) -> Set[str]:
    """Characters that occur more than once in the key."""
    seen = set()
    duplicates = set()
    for char in key:
        if char in seen:
            duplicates.add(char)
        seen.add(char)
    return duplicates

def clean_key(key: str) -> str:
    """Drop every repeat of a character, keeping first occurrences in order."""
    return "".join(dict.fromkeys(key))

# ==========================================
#  CODEC: Encoder & Decoder
# ==========================================

class EncodeResult(NamedTuple):
    result: str
    has_unmapped: bool

class DecodeResult(NamedTuple):
    result: str
    has_errors: bool

# Leading/trailing blanks are tolerated around a code (e.g. "1, 2" with ",")
_INDEX_TOKEN = re.compile(r"\s*[+-]?[0-9]+\s*")

def encode(text: str, key_map: Dict[str, int], separator: str = DEFAULT_SEPARATOR) -> EncodeResult:
    """
    Replace every character with its index in the key map.

    Characters missing from the map are emitted unchanged. Any such
    character that is not whitespace sets ``has_unmapped``.
    """
    if not text:
        return EncodeResult("", False)

    tokens = []
    has_unmapped = False
    for char in text:
        index = key_map.get(char)
        if index is not None:
            tokens.append(str(index))
        else:
            tokens.append(char)
            if not char.isspace():
                has_unmapped = True

    return EncodeResult(separator.join(tokens), has_unmapped)

def _decode_continuous(encoded: str, key: str) -> DecodeResult:
    # Single digit per code: keys longer than 9 can't be fully addressed here.
    pieces = []
    has_errors = False
    for char in encoded:
        if '0' <= char <= '9':
            index = int(char)
            if 1 <= index <= len(key):
                pieces.append(key[index - 1])
            else:
                pieces.append(char)
                has_errors = True
        else:
            pieces.append(char)
            if not char.isspace():
                has_errors = True
    return DecodeResult("".join(pieces), has_errors)

def _decode_separated(encoded: str, key: str, separator: str) -> DecodeResult:
    # A plain space separator accepts any run of whitespace, newlines included
    parts = encoded.split() if separator == " " else encoded.split(separator)

    pieces = []
    has_errors = False
    for part in parts:
        if part == "":
            continue
        if _INDEX_TOKEN.fullmatch(part):
            # More significant digits than len(key) has can never be in range
            digits = part.strip().lstrip("+-").lstrip("0")
            if len(digits) <= len(str(len(key))):
                index = int(part)
                if 1 <= index <= len(key):
                    pieces.append(key[index - 1])
                    continue
        pieces.append(part)
        has_errors = True
    return DecodeResult("".join(pieces), has_errors)

def decode(encoded: str, key: str, separator: str = DEFAULT_SEPARATOR) -> DecodeResult:
    """
    Turn index codes back into key characters.

    An empty separator selects continuous mode, where each ASCII digit is
    one code. Otherwise the text is split into codes on the separator.
    Codes that are not integers or fall outside ``[1, len(key)]`` are kept
    verbatim and set ``has_errors``.
    """
    if not encoded or not key:
        return DecodeResult("", False)
    if separator == "":
        return _decode_continuous(encoded, key)
    return _decode_separated(encoded, key, separator)

# ==========================================
#  BASE64 HELPERS
# ==========================================

_BASE64_CHARS = re.compile(r"[A-Za-z0-9+/=]+")

def strip_whitespace(text: str) -> str:
    """Remove all whitespace, e.g. line wrapping in pasted Base64."""
    return "".join(text.split())

def is_valid_base64_like(text: str) -> bool:
    """True if ``text`` holds only Base64 characters, ignoring whitespace."""
    clean = strip_whitespace(text)
    if not clean:
        return True
    return _BASE64_CHARS.fullmatch(clean) is not None

# ==========================================
#  FRAMEWORK: Abstract Base Class & Registry
# ==========================================

class CipherStrategy(ABC):
    """Abstract base class that all ciphers must implement."""

    @property
    @abstractmethod
    def name(self) -> str:
        """The command-line name for this cipher."""
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        """Short description for help text."""
        pass

    @abstractmethod
    def encode(self, text: str):
        pass

    @abstractmethod
    def decode(self, text: str):
        pass

class KeyCipher(CipherStrategy):
    """
    Index cipher bound to a mutable key.

    The key map is cached against the key string it was built from and
    rebuilt on first use after the key changes. Only one map is kept.
    """

    def __init__(self, key: str = DEFAULT_KEY, separator: str = DEFAULT_SEPARATOR,
                 name: str = "custom", description: str = "User supplied key."):
        self._name = name
        self._description = description
        self.separator = separator
        self._key = key
        self._cached_for = None
        self._key_map = {}

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def key(self) -> str:
        return self._key

    @key.setter
    def key(self, value: str):
        self._key = value

    @property
    def key_map(self) -> Dict[str, int]:
        if self._cached_for != self._key:
            self._key_map = build_key_map(self._key)
            self._cached_for = self._key
        return self._key_map

    @property
    def duplicates(self) -> Set[str]:
        return find_duplicates(self._key)

    @property
    def max_continuous_index(self) -> int:
        """Highest code reachable in continuous mode."""
        return min(len(self._key), CONTINUOUS_MAX_INDEX)

    def clean(self) -> str:
        self.key = clean_key(self._key)
        return self._key

    def reset(self) -> str:
        self.key = DEFAULT_KEY
        return self._key

    def encode(self, text: str, sanitize: bool = True) -> EncodeResult:
        if sanitize:
            text = strip_whitespace(text)
        return encode(text, self.key_map, self.separator)

    def decode(self, text: str) -> DecodeResult:
        return decode(text, self._key, self.separator)

PRESET_REGISTRY = {}

def register_preset(name: str, key: str, description: str = "") -> KeyCipher:
    """Add (or replace) a named key preset."""
    cipher = KeyCipher(key, name=name, description=description or f"Preset key '{name}'.")
    PRESET_REGISTRY[name] = cipher
    return cipher

register_preset(DEFAULT_PRESET, DEFAULT_KEY,
                "Base64 alphabet plus data URI punctuation (default).")

# ==========================================
#  CONFIGURATION: Preset Loading
# ==========================================

def _read_key_file(path: Path) -> str:
    with open(path, "r", encoding="utf-8", newline="") as f:
        key = f.read()
    # Editors usually end the file with a newline that is not part of the key
    if key.endswith("\r\n"):
        return key[:-2]
    if key.endswith("\n"):
        return key[:-1]
    return key

def load_presets(preset_dir: str = None) -> List[str]:
    """
    Load key presets from a directory with manifest.json.

    Each manifest entry carries a ``name``, an optional ``description``
    and either an inline ``key`` or a ``file`` holding the key.

    Args:
        preset_dir: Path to presets directory (default: ./presets next to this module)

    Returns:
        List of successfully loaded preset names
    """
    if preset_dir is None:
        preset_dir = Path(__file__).parent / "presets"
    else:
        preset_dir = Path(preset_dir)

    if not preset_dir.exists():
        return []

    manifest_path = preset_dir / "manifest.json"
    if not manifest_path.exists():
        log_warn(f"No manifest.json in {preset_dir}. Skipping preset loading.")
        return []

    try:
        with open(manifest_path, "r", encoding="utf-8") as f:
            manifest = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        log_warn(f"Failed to read manifest.json: {e}")
        return []

    if not isinstance(manifest, dict):
        log_warn("manifest.json must contain an object. Skipping preset loading.")
        return []

    entries = manifest.get("presets", [])
    if not isinstance(entries, list):
        log_warn("'presets' in manifest.json must be a list. Skipping preset loading.")
        return []

    loaded = []
    for entry in entries:
        if not isinstance(entry, dict):
            log_warn(f"Preset entry is not an object: {entry!r}")
            continue
        name = entry.get("name")
        if not name or not isinstance(name, str):
            log_warn(f"Preset entry without a valid name: {entry}")
            continue
        description = entry.get("description", "")
        if not isinstance(description, str):
            log_warn(f"Preset '{name}' has a non-text description")
            continue

        if "key" in entry:
            key = entry["key"]
        elif entry.get("file"):
            filepath = preset_dir / entry["file"]
            try:
                key = _read_key_file(filepath)
            except (OSError, UnicodeDecodeError) as e:
                log_warn(f"Preset file for '{name}' not readable: {e}")
                continue
        else:
            log_warn(f"Preset '{name}' has neither 'key' nor 'file'")
            continue

        if not isinstance(key, str) or not key:
            log_warn(f"Preset '{name}' has an empty or invalid key")
            continue

        if name in PRESET_REGISTRY:
            log_info(f"Preset '{name}' overrides an existing preset.")
        register_preset(name, key, description)
        duplicates = find_duplicates(key)
        if duplicates:
            log_warn(f"Preset '{name}' repeats characters: {_format_chars(duplicates)}")
        loaded.append(name)

    return loaded

# ==========================================
#  CLI LOGIC
# ==========================================

def _format_chars(chars) -> str:
    return ", ".join(repr(c) for c in sorted(chars))

def list_presets():
    """Print all available key presets and exit."""
    print("\nAvailable Presets:")
    print("=" * 60)
    for name, cipher in PRESET_REGISTRY.items():
        print(f"  {name:<12} [{len(cipher.key):>3} chars]  {cipher.description}")
    print("=" * 60)
    print(f"\nTotal: {len(PRESET_REGISTRY)} preset(s) registered.")

def check_key(cipher: KeyCipher) -> bool:
    """Print a duplicate report for the key. Returns True if the key is clean."""
    duplicates = cipher.duplicates
    print(f"Key length: {len(cipher.key)}")
    if not duplicates:
        print("No duplicate characters.")
        return True
    print(f"Duplicate characters: {_format_chars(duplicates)}")
    print(f"Cleaned key: {clean_key(cipher.key)}")
    return False

def _prescan_option(argv: List[str], option: str) -> Optional[str]:
    for i, arg in enumerate(argv):
        if arg == option and i + 1 < len(argv):
            return argv[i + 1]
        elif arg.startswith(option + "="):
            return arg.split("=", 1)[1]
    return None

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keycipher",
        description="Key Index Cipher: swap each character for its position in a key.",
        formatter_class=argparse.RawTextHelpFormatter
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    action_group = parser.add_mutually_exclusive_group(required=True)
    action_group.add_argument("-e", "--encode", action="store_true", help="Encode mode")
    action_group.add_argument("-d", "--decode", action="store_true", help="Decode mode")
    action_group.add_argument("-l", "--list", action="store_true", help="List all available presets")
    action_group.add_argument("--check-key", action="store_true",
                              help="Report duplicate characters in the key")

    preset_help = "\n".join(f"  {k:<12}: {v.description}" for k, v in PRESET_REGISTRY.items())

    key_group = parser.add_mutually_exclusive_group()
    key_group.add_argument("-p", "--preset", choices=list(PRESET_REGISTRY.keys()), default=DEFAULT_PRESET,
                           help=f"Key preset (default: {DEFAULT_PRESET}).\n{preset_help}")
    key_group.add_argument("-k", "--key", help="Key given directly on the command line")
    key_group.add_argument("--key-file", metavar="PATH", help="Read the key from a file")

    parser.add_argument("--clean-key", action="store_true",
                        help="Remove repeated characters from the key before use")

    sep_group = parser.add_mutually_exclusive_group()
    sep_group.add_argument("-s", "--separator", default=DEFAULT_SEPARATOR,
                           help="Code separator (default: a space; a space also splits on any whitespace when decoding)")
    sep_group.add_argument("-c", "--continuous", action="store_true",
                           help=f"No separator; decode reads one digit per code (keys up to {CONTINUOUS_MAX_INDEX} chars)")

    parser.add_argument("--no-sanitize", action="store_true",
                        help="Encode input as-is instead of stripping whitespace first")
    parser.add_argument("--strict", action="store_true",
                        help="Exit with status 1 when unmapped characters or invalid codes are found")

    parser.add_argument("--preset-dir", type=str, metavar="PATH",
                        help="Custom preset directory (must contain manifest.json)")

    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable verbose output (info and warning messages)")

    io_group = parser.add_mutually_exclusive_group()
    io_group.add_argument("-t", "--text", help="Direct text input")
    io_group.add_argument("-i", "--input", help="Input file path")

    parser.add_argument("-o", "--output", help="Output file path")
    return parser

def resolve_cipher(args) -> KeyCipher:
    """Build the session cipher from the key options."""
    separator = "" if args.continuous else args.separator
    if args.key is not None:
        cipher = KeyCipher(args.key, separator)
    elif args.key_file:
        try:
            key = _read_key_file(Path(args.key_file))
        except FileNotFoundError:
            sys.exit(f"Error: Key file '{args.key_file}' not found.")
        except (OSError, UnicodeDecodeError) as e:
            sys.exit(f"Error reading key file: {e}")
        cipher = KeyCipher(key, separator, name="file", description=f"Key from {args.key_file}.")
    else:
        preset = PRESET_REGISTRY[args.preset]
        cipher = KeyCipher(preset.key, separator, name=preset.name, description=preset.description)

    if args.clean_key:
        before = len(cipher.key)
        cipher.clean()
        if len(cipher.key) != before:
            log_info(f"Removed {before - len(cipher.key)} repeated character(s) from the key.")
    return cipher

def read_source(args) -> str:
    """Read the payload. Trailing line breaks from files and pipes are dropped."""
    if args.text is not None:
        return args.text
    if args.input:
        try:
            with open(args.input, "r", encoding="utf-8") as f:
                return f.read().rstrip("\r\n")
        except FileNotFoundError:
            sys.exit(f"Error: File '{args.input}' not found.")
        except (OSError, UnicodeDecodeError) as e:
            sys.exit(f"Error reading input file: {e}")
    if not sys.stdin.isatty():
        return _read_stdin()
    print("[KEYCIPHER] Paste input below. Ctrl+D (Unix) or Ctrl+Z (Win) to end:")
    try:
        return _read_stdin()
    except KeyboardInterrupt:
        sys.exit(0)

def _read_stdin() -> str:
    try:
        return sys.stdin.read().rstrip("\r\n")
    except UnicodeDecodeError as e:
        sys.exit(f"Error reading standard input: {e}")

def main(argv: List[str] = None) -> int:
    global VERBOSE

    if argv is None:
        argv = sys.argv[1:]

    # Preliminary scan for --verbose (needed before preset loading)
    VERBOSE = "--verbose" in argv or "-v" in argv

    # Load presets before parsing args (so they appear in --list and -p choices)
    loaded_presets = load_presets(_prescan_option(argv, "--preset-dir"))
    if loaded_presets:
        log_info(f"Loaded presets: {', '.join(loaded_presets)}")

    args = build_parser().parse_args(argv)

    if args.list:
        list_presets()
        return 0

    cipher = resolve_cipher(args)

    if args.check_key:
        clean = check_key(cipher)
        return 0 if clean or not args.strict else 1

    if not cipher.key:
        sys.exit("Error: Key is empty.")

    duplicates = cipher.duplicates
    if duplicates:
        print(f"[WARN] Key repeats characters {_format_chars(duplicates)}; "
              "first occurrences win. Use --clean-key to remove repeats.", file=sys.stderr)

    if cipher.separator == "" and len(cipher.key) > CONTINUOUS_MAX_INDEX:
        log_warn(f"Continuous mode only reaches the first {CONTINUOUS_MAX_INDEX} key characters "
                 f"(key has {len(cipher.key)}).")

    source_text = read_source(args)

    warned = False
    if args.encode:
        if cipher.name == DEFAULT_PRESET and not is_valid_base64_like(source_text):
            log_info("Input does not look like Base64; characters outside the key are kept as-is.")
        result, warned = cipher.encode(source_text, sanitize=not args.no_sanitize)
        if warned:
            print("[WARN] Some characters in the input were not found in the key and were left as-is.",
                  file=sys.stderr)
    else:
        result, warned = cipher.decode(source_text)
        if warned:
            print("[WARN] Input contained codes that were invalid or out of bounds for the current key.",
                  file=sys.stderr)

    if args.output:
        try:
            with open(args.output, "w", encoding="utf-8") as f:
                f.write(result)
                f.write("\n")
        except OSError as e:
            sys.exit(f"Error writing output: {e}")
    else:
        print(result)

    return 1 if warned and args.strict else 0

if __name__ == "__main__":
    sys.exit(main())
