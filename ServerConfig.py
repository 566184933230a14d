import argparse
import os

DEFAULT_PORT = 8080
DEFAULT_BIND = "127.0.0.1"
DEFAULT_DIRECTORY = "."


class ConfigurationError(Exception):
    """Parametri di avvio non validi (cartella inesistente, porta fuori range)"""


class ServerConfig:
    """Configurazione esplicita del server, passata alla routine di avvio"""

    def __init__(self, directory=DEFAULT_DIRECTORY, bind=DEFAULT_BIND, port=DEFAULT_PORT, secure=False):
        self.directory = directory
        self.bind = bind
        self.port = port
        self.secure = secure

    @staticmethod
    def from_args(args):
        """Crea la configurazione a partire dagli argomenti della riga di comando"""
        return ServerConfig(
            directory=args.directory,
            bind=args.bind,
            port=args.port,
            secure=args.secure
        )

    @property
    def scheme(self):
        return "https" if self.secure else "http"

    def validate(self):
        """
        Verifica la configurazione e risolve la cartella in percorso assoluto

        Returns:
            ServerConfig: La configurazione stessa, con `directory` assoluta

        Raises:
            ConfigurationError: Se la cartella non esiste o la porta non è valida
        """
        directory = os.path.abspath(self.directory)
        if not os.path.exists(directory):
            raise ConfigurationError(f"La cartella non esiste: {directory}")
        if not os.path.isdir(directory):
            raise ConfigurationError(f"Il percorso non è una cartella: {directory}")
        if not 0 <= self.port <= 65535:
            raise ConfigurationError(f"Porta non valida: {self.port}")
        self.directory = directory
        return self

    def __repr__(self):
        return (f"ServerConfig(directory={self.directory!r}, bind={self.bind!r}, "
                f"port={self.port!r}, secure={self.secure!r})")


def build_parser():
    parser = argparse.ArgumentParser(
        description="Serve una cartella in HTTP o, con --secure, in HTTPS con un certificato temporaneo."
    )
    parser.add_argument("-p", "--port", type=int, default=DEFAULT_PORT,
                        help=f"Porta di ascolto (default: {DEFAULT_PORT}, 0 = scelta dal sistema)")
    parser.add_argument("-b", "--bind", default=DEFAULT_BIND,
                        help=f"Indirizzo su cui mettersi in ascolto (default: {DEFAULT_BIND})")
    parser.add_argument("-d", "--directory", default=DEFAULT_DIRECTORY,
                        help="Cartella da servire (default: cartella corrente)")
    parser.add_argument("-s", "--secure", action="store_true",
                        help="Abilita HTTPS con un certificato autofirmato generato all'avvio")
    return parser
