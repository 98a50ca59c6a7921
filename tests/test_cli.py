import json

import pytest

import keycipher
from keycipher import main


@pytest.fixture(autouse=True)
def isolated_state(monkeypatch):
    monkeypatch.setattr(keycipher, "PRESET_REGISTRY", dict(keycipher.PRESET_REGISTRY))
    monkeypatch.setattr(keycipher, "VERBOSE", False)


def run(capsys, *argv):
    code = main(list(argv))
    out, err = capsys.readouterr()
    return code, out, err


def test_encode_default_preset(capsys):
    code, out, err = run(capsys, "-e", "-t", "SGk=")
    assert code == 0
    assert out == "19 7 37 65\n"
    assert err == ""


def test_decode_default_preset(capsys):
    code, out, _ = run(capsys, "-d", "-t", "19 7\n37 65")
    assert code == 0
    assert out == "SGk=\n"


def test_encode_strips_pasted_whitespace(capsys):
    _, out, err = run(capsys, "-e", "-t", "SG\nk=")
    assert out == "19 7 37 65\n"
    assert "[WARN]" not in err


def test_encode_no_sanitize(capsys):
    _, out, _ = run(capsys, "-e", "-k", "AB", "--no-sanitize", "-t", "A B")
    assert out == "1   2\n"


def test_unmapped_warning_and_strict(capsys):
    code, out, err = run(capsys, "-e", "-k", "ABC", "-t", "AB!")
    assert code == 0
    assert out == "1 2 !\n"
    assert "not found in the key" in err

    code, _, _ = run(capsys, "-e", "-k", "ABC", "-t", "AB!", "--strict")
    assert code == 1


def test_invalid_code_warning(capsys):
    code, out, err = run(capsys, "-d", "-k", "ABC", "-t", "1 2 5", "--strict")
    assert code == 1
    assert out == "AB5\n"
    assert "invalid or out of bounds" in err


def test_continuous_decode(capsys):
    code, out, err = run(capsys, "-d", "-c", "-k", "XYZ", "-t", "12a3")
    assert code == 0
    assert out == "XYaZ\n"
    assert "[WARN]" in err


def test_custom_separator(capsys):
    _, out, _ = run(capsys, "-e", "-k", "XYZ", "-s", ",", "-t", "ZZX")
    assert out == "3,3,1\n"
    _, out, _ = run(capsys, "-d", "-k", "XYZ", "-s", ",", "-t", "3,3,1")
    assert out == "ZZX\n"


def test_duplicate_key_warning(capsys):
    _, out, err = run(capsys, "-e", "-k", "AAB", "-t", "AB")
    assert out == "1 3\n"
    assert "Key repeats characters 'A'" in err


def test_clean_key_option(capsys):
    _, out, err = run(capsys, "-e", "-k", "AAB", "--clean-key", "-t", "AB")
    assert out == "1 2\n"
    assert err == ""


def test_check_key(capsys):
    code, out, _ = run(capsys, "--check-key", "-k", "AAB")
    assert code == 0
    assert "Duplicate characters: 'A'" in out
    assert "Cleaned key: AB" in out

    code, _, _ = run(capsys, "--check-key", "-k", "AAB", "--strict")
    assert code == 1

    code, out, _ = run(capsys, "--check-key")
    assert code == 0
    assert "No duplicate characters." in out


def test_key_file(tmp_path, capsys):
    key_file = tmp_path / "key.txt"
    key_file.write_text("XYZ\n", encoding="utf-8")
    _, out, _ = run(capsys, "-d", "--key-file", str(key_file), "-t", "3 2 1")
    assert out == "ZYX\n"


def test_missing_key_file(tmp_path):
    with pytest.raises(SystemExit) as exc:
        main(["-d", "--key-file", str(tmp_path / "missing.txt"), "-t", "1"])
    assert "not found" in str(exc.value.code)


def test_empty_key_is_fatal():
    with pytest.raises(SystemExit) as exc:
        main(["-e", "-k", "", "-t", "A"])
    assert exc.value.code == "Error: Key is empty."


def test_shipped_preset(capsys):
    _, out, _ = run(capsys, "-p", "hex", "-e", "-t", "ff00")
    assert out == "16 16 1 1\n"


def test_preset_dir(tmp_path, capsys):
    manifest = {"presets": [{"name": "mine", "key": "QWERTY", "description": "Top row."}]}
    (tmp_path / "manifest.json").write_text(json.dumps(manifest), encoding="utf-8")
    _, out, _ = run(capsys, "--preset-dir", str(tmp_path), "-p", "mine", "-d", "-t", "6 2")
    assert out == "YW\n"


def test_list_presets(capsys):
    code, out, _ = run(capsys, "-l")
    assert code == 0
    assert "base64" in out
    assert "hex" in out
    assert "preset(s) registered" in out


def test_file_input_and_output(tmp_path, capsys):
    src = tmp_path / "in.txt"
    dst = tmp_path / "out.txt"
    src.write_text("SGVs\nbG8=\n", encoding="utf-8")

    code, out, _ = run(capsys, "-e", "-i", str(src), "-o", str(dst))
    assert code == 0
    assert out == ""
    encoded = dst.read_text(encoding="utf-8").strip()

    src.write_text(encoded + "\n", encoding="utf-8")
    run(capsys, "-d", "-i", str(src), "-o", str(dst))
    assert dst.read_text(encoding="utf-8") == "SGVsbG8=\n"


def test_missing_input_file(tmp_path):
    with pytest.raises(SystemExit) as exc:
        main(["-e", "-i", str(tmp_path / "missing.txt")])
    assert "not found" in str(exc.value.code)


def test_verbose_reports_non_base64_input(capsys):
    _, out, err = run(capsys, "-v", "-e", "-t", "Hi!")
    assert "[INFO] Input does not look like Base64" in err
    assert "[WARN] Some characters" in err


def test_verbose_continuous_limit(capsys):
    _, _, err = run(capsys, "-v", "-d", "-c", "-t", "123")
    assert "Continuous mode only reaches the first 9" in err


def test_bad_preset_manifest_does_not_break_cli(tmp_path, capsys):
    (tmp_path / "manifest.json").write_text('{"presets": null}', encoding="utf-8")
    code, out, _ = run(capsys, "--preset-dir", str(tmp_path), "-e", "-t", "SGk=")
    assert code == 0
    assert out == "19 7 37 65\n"


def test_key_file_not_utf8(tmp_path):
    key_file = tmp_path / "key.bin"
    key_file.write_bytes(b"\xff\xfeAB")
    with pytest.raises(SystemExit) as exc:
        main(["-d", "--key-file", str(key_file), "-t", "1"])
    assert str(exc.value.code).startswith("Error reading key file:")


def test_input_is_directory(tmp_path):
    with pytest.raises(SystemExit) as exc:
        main(["-e", "-i", str(tmp_path)])
    assert str(exc.value.code).startswith("Error")


def test_input_file_not_utf8(tmp_path):
    src = tmp_path / "in.bin"
    src.write_bytes(b"SG\xffk=")
    with pytest.raises(SystemExit) as exc:
        main(["-e", "-i", str(src)])
    assert str(exc.value.code).startswith("Error reading input file:")


def test_text_option_keeps_trailing_newline(capsys):
    _, out, _ = run(capsys, "-e", "-k", "AB", "--no-sanitize", "-t", "AB\n")
    assert out == "1 2 \n\n"


def test_input_file_trailing_newline_dropped(tmp_path, capsys):
    src = tmp_path / "in.txt"
    src.write_text("AB\n", encoding="utf-8")
    _, out, _ = run(capsys, "-e", "-k", "AB", "--no-sanitize", "-i", str(src))
    assert out == "1 2\n"
