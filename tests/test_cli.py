import os

import pytest

import fenv


def test_encrypt_then_decrypt_file(tmp_path, key_files, capsys):
    priv, pub = key_files
    src = tmp_path / "invoice.xml"
    src.write_bytes(b"<invoice/>")
    out_dir = tmp_path / "sealed"
    out_dir.mkdir()

    assert fenv.main(["-e", "-i", pub, "-o", str(out_dir), str(src)]) == 0
    assert "successfully encrypted" in capsys.readouterr().out
    enc = out_dir / "invoice.xml.enc"
    assert enc.exists() and (out_dir / "invoice.xml.key").exists()

    plain = tmp_path / "restored.xml"
    assert fenv.main(["-d", "-i", priv, "-o", str(plain), str(enc)]) == 0
    assert plain.read_bytes() == b"<invoice/>"


def test_labels_go_into_output_names(tmp_path, key_files):
    _, pub = key_files
    src = tmp_path / "rut.pdf"
    src.write_bytes(b"%PDF")

    assert fenv.main(["-e", "-i", pub, "--nit", "900", "--doc-type", "RUT", str(src)]) == 0
    assert (tmp_path / "RUT_900_rut.pdf.enc").exists()


def test_nit_without_doc_type_is_a_usage_error(tmp_path, key_files):
    _, pub = key_files
    with pytest.raises(SystemExit):
        fenv.main(["-e", "-i", pub, "--nit", "900", str(tmp_path / "x")])


def test_invalid_public_key_reports_error(tmp_path, capsys):
    bad = tmp_path / "bad.pem"
    bad.write_text("-----BEGIN CERTIFICATE-----\nAAAA\n-----END CERTIFICATE-----\n")
    src = tmp_path / "a.txt"
    src.write_bytes(b"a")

    assert fenv.main(["-e", "-i", str(bad), str(src)]) == 1
    assert "SPKI PEM" in capsys.readouterr().err
    assert not (tmp_path / "a.txt.enc").exists()


def test_encrypt_folder(tmp_path, key_files, capsys):
    _, pub = key_files
    src = tmp_path / "batch"
    src.mkdir()
    for name in ("a.txt", "b.txt"):
        (src / name).write_bytes(name.encode())

    assert fenv.main(["-e", "-i", pub, "--dir", str(src), "-o", str(tmp_path / "out")]) == 0
    assert "2/2 files encrypted, 0 failed" in capsys.readouterr().out
    assert len(os.listdir(tmp_path / "out")) == 4


def test_encrypt_folder_names_the_error_type(tmp_path, key_files, capsys):
    _, pub = key_files
    src = tmp_path / "batch"
    src.mkdir()
    (src / "a.txt").write_bytes(b"a")
    (src / "b.txt").write_bytes(b"b")
    out_dir = tmp_path / "out"
    out_dir.mkdir()
    (out_dir / "a.txt.key").write_bytes(b"stale")

    assert fenv.main(["-e", "-i", pub, "--dir", str(src), "-o", str(out_dir)]) == 1
    out = capsys.readouterr().out
    assert f"failed {src / 'a.txt'}: FileExistsError:" in out
    assert f"ok     {src / 'b.txt'}" in out
    assert "1/2 files encrypted, 1 failed" in out


def test_genrsakey(tmp_path):
    prefix = str(tmp_path / "recipient")
    assert fenv.main(["--genrsakey", "--key-size", "2048", "-o", prefix]) == 0
    assert os.path.exists(f"{prefix}_private.pem")
    with open(f"{prefix}_public.pem") as f:
        assert f.read().startswith("-----BEGIN PUBLIC KEY-----")


def test_genrsakey_requires_output():
    with pytest.raises(SystemExit):
        fenv.main(["--genrsakey"])


def test_default_public_key_path(tmp_path, key_files, monkeypatch):
    _, pub = key_files
    monkeypatch.setattr(fenv, "RSA_default_public_key", pub)
    src = tmp_path / "d.txt"
    src.write_bytes(b"d")

    assert fenv.main(["-e", str(src)]) == 0
    assert (tmp_path / "d.txt.key").exists()
