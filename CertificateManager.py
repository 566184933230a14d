import ipaddress
import os
import secrets
import shutil
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Tuple
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

# Policy del certificato temporaneo: non configurabile dal chiamante
KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537
VALIDITY_DAYS = 365
SERIAL_NUMBER_BITS = 128
ORGANIZATION_NAME = "Certificato Temporaneo - Non Per Produzione"
SAN_DNS_NAMES = ["localhost"]
SAN_IP_ADDRESSES = ["127.0.0.1"]

TEMP_DIR_PREFIX = "static_server_cert_"
CERT_FILENAME = "cert.pem"
KEY_FILENAME = "key.pem"
KEY_FILE_MODE = 0o600


class CertificateGenerationError(Exception):
    """Errore fatale durante la creazione dell'identità TLS temporanea"""

    step = "generazione certificato"

    def __init__(self, message):
        super().__init__(f"[{self.step}] {message}")


class StorageAllocationFailure(CertificateGenerationError):
    step = "allocazione cartella temporanea"


class RandomSourceFailure(CertificateGenerationError):
    step = "generazione numero seriale"


class KeyGenerationFailure(CertificateGenerationError):
    step = "generazione chiave privata"


class CertificateEncodingFailure(CertificateGenerationError):
    step = "costruzione e codifica certificato"


class IOFailure(CertificateGenerationError):
    step = "scrittura file PEM"


class CertificateManager:
    """Genera l'identità TLS autofirmata usata dal server in modalità sicura"""

    @staticmethod
    def generate_private_key():
        """Genera una chiave privata RSA da una sorgente casuale sicura"""
        try:
            return rsa.generate_private_key(
                public_exponent=PUBLIC_EXPONENT,
                key_size=KEY_SIZE
            )
        except Exception as e:
            raise KeyGenerationFailure(f"Impossibile generare la chiave RSA: {e}") from e

    @staticmethod
    def generate_serial_number() -> int:
        """
        Estrae un numero seriale casuale nell'intervallo [1, 2^128)

        Returns:
            int: Numero seriale, mai costante tra due invocazioni
        """
        try:
            # lo zero non è un seriale X.509 valido
            return secrets.randbelow((1 << SERIAL_NUMBER_BITS) - 1) + 1
        except (OSError, NotImplementedError) as e:
            raise RandomSourceFailure(f"Sorgente casuale non disponibile: {e}") from e

    @staticmethod
    def build_certificate(private_key, serial_number=None, now=None):
        """
        Costruisce e autofirma il certificato X.509 per localhost

        Args:
            private_key: Chiave privata RSA che firma il proprio certificato
            serial_number (int, optional): Seriale da usare, generato se assente
            now (datetime, optional): Istante di generazione (UTC)

        Returns:
            x509.Certificate: Certificato foglia con issuer == subject
        """
        if serial_number is None:
            serial_number = CertificateManager.generate_serial_number()
        if now is None:
            now = datetime.now(timezone.utc)

        subject = issuer = x509.Name([
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION_NAME),
        ])
        alt_names = [x509.DNSName(name) for name in SAN_DNS_NAMES]
        alt_names += [x509.IPAddress(ipaddress.ip_address(ip)) for ip in SAN_IP_ADDRESSES]

        try:
            public_key = private_key.public_key()
            return (
                x509.CertificateBuilder()
                .subject_name(subject)
                .issuer_name(issuer)
                .public_key(public_key)
                .serial_number(serial_number)
                .not_valid_before(now)
                .not_valid_after(now + timedelta(days=VALIDITY_DAYS))
                .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
                .add_extension(x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=True,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False
                ), critical=True)
                .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
                .add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
                .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
                .add_extension(x509.AuthorityKeyIdentifier.from_issuer_public_key(public_key), critical=False)
                .sign(private_key, hashes.SHA256())
            )
        except Exception as e:
            raise CertificateEncodingFailure(f"Impossibile firmare il certificato: {e}") from e

    @staticmethod
    def encode_pem(certificate, private_key):
        """Serializza certificato (CERTIFICATE) e chiave (PRIVATE KEY, PKCS#8) in PEM"""
        try:
            cert_pem = certificate.public_bytes(serialization.Encoding.PEM)
            key_pem = private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption()
            )
        except Exception as e:
            raise CertificateEncodingFailure(f"Impossibile codificare in PEM: {e}") from e
        return cert_pem, key_pem

    @staticmethod
    def generate_identity_pem() -> Tuple[bytes, bytes]:
        """
        Genera l'identità TLS interamente in memoria

        Returns:
            tuple: (cert_pem, key_pem) come bytes
        """
        private_key = CertificateManager.generate_private_key()
        serial_number = CertificateManager.generate_serial_number()
        certificate = CertificateManager.build_certificate(private_key, serial_number)
        return CertificateManager.encode_pem(certificate, private_key)

    @staticmethod
    def _write_artifact(path, data, mode):
        # O_EXCL: il file deve essere nuovo, mode applicato già alla creazione
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
        with os.fdopen(fd, "wb") as f:
            f.write(data)

    @staticmethod
    def generate_identity() -> Tuple[str, str]:
        """
        Genera chiave e certificato e li salva in una cartella temporanea privata

        La cartella è creata con permessi 0700 e nome casuale; la chiave privata
        nasce con permessi 0600. In caso di errore non resta nulla su disco.

        Returns:
            tuple: (cert_path, key_path)

        Raises:
            CertificateGenerationError: Una sottoclasse che identifica il passo fallito
        """
        try:
            temp_dir = tempfile.mkdtemp(prefix=TEMP_DIR_PREFIX)
        except OSError as e:
            raise StorageAllocationFailure(f"Impossibile creare la cartella temporanea: {e}") from e

        cert_path = os.path.join(temp_dir, CERT_FILENAME)
        key_path = os.path.join(temp_dir, KEY_FILENAME)
        try:
            cert_pem, key_pem = CertificateManager.generate_identity_pem()
            try:
                CertificateManager._write_artifact(key_path, key_pem, KEY_FILE_MODE)
                CertificateManager._write_artifact(cert_path, cert_pem, 0o644)
            except OSError as e:
                raise IOFailure(f"Impossibile scrivere in {temp_dir}: {e}") from e
        except BaseException:
            shutil.rmtree(temp_dir, ignore_errors=True)
            raise

        return cert_path, key_path

    @staticmethod
    def fingerprint(cert_pem: bytes) -> str:
        """Restituisce l'impronta SHA-256 del certificato (es. 'AB:CD:...')"""
        certificate = x509.load_pem_x509_certificate(cert_pem)
        return certificate.fingerprint(hashes.SHA256()).hex(":").upper()

    @staticmethod
    def cleanup(cert_path: str, key_path: str) -> bool:
        """
        Cancella i file generati e la loro cartella, se esistono ancora

        Args:
            cert_path (str): Percorso del certificato
            key_path (str): Percorso della chiave privata

        Returns:
            bool: True se non è rimasto nulla su disco
        """
        clean = True
        for path in (key_path, cert_path):
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                print(f"⚠️ Impossibile eliminare {path}: {e}", file=sys.stderr)
                clean = False

        temp_dir = os.path.dirname(key_path)
        if os.path.isdir(temp_dir):
            try:
                os.rmdir(temp_dir)
            except OSError as e:
                print(f"⚠️ Impossibile eliminare la cartella {temp_dir}: {e}", file=sys.stderr)
                clean = False
        return clean


class EphemeralIdentity:
    """Identità TLS valida solo all'interno del blocco `with`"""

    def __init__(self):
        self.cert_path = None
        self.key_path = None

    def __enter__(self):
        self.cert_path, self.key_path = CertificateManager.generate_identity()
        return self.cert_path, self.key_path

    def __exit__(self, exc_type, exc_value, traceback):
        if self.key_path is not None:
            CertificateManager.cleanup(self.cert_path, self.key_path)
            self.cert_path = self.key_path = None
        return False
