import contextlib
import tempfile
import threading
import pytest
from cryptography import x509
from CertificateManager import CertificateManager


@pytest.fixture
def identity():
    """Coppia (cert_path, key_path) generata per il test e poi cancellata"""
    cert_path, key_path = CertificateManager.generate_identity()
    yield cert_path, key_path
    CertificateManager.cleanup(cert_path, key_path)


@pytest.fixture
def certificate(identity):
    with open(identity[0], "rb") as f:
        return x509.load_pem_x509_certificate(f.read())


@pytest.fixture
def served_dir(tmp_path):
    (tmp_path / "hello.txt").write_text("ciao dal server\n")
    return tmp_path


@pytest.fixture
def recorded_temp_dirs(monkeypatch):
    """Registra ogni cartella creata da tempfile.mkdtemp durante il test"""
    created = []
    real_mkdtemp = tempfile.mkdtemp

    def recording_mkdtemp(*args, **kwargs):
        path = real_mkdtemp(*args, **kwargs)
        created.append(path)
        return path

    monkeypatch.setattr(tempfile, "mkdtemp", recording_mkdtemp)
    return created


@contextlib.contextmanager
def running(httpd):
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield httpd
    finally:
        httpd.shutdown()
        httpd.server_close()
        thread.join(timeout=5)


@pytest.fixture
def run_in_thread():
    return running
