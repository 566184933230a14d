import functools
import signal
import ssl
import sys
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from CertificateManager import CertificateGenerationError, CertificateManager, EphemeralIdentity
from ServerConfig import ConfigurationError, ServerConfig, build_parser


class StaticHTTPServer(ThreadingHTTPServer):
    """Server HTTP(S) con un thread per connessione"""

    daemon_threads = True

    def finish_request(self, request, client_address):
        # l'handshake TLS avviene nel thread della connessione, non in accept()
        if isinstance(request, ssl.SSLSocket):
            try:
                request.do_handshake()
            except (ssl.SSLError, OSError) as e:
                print(f"⚠️ Handshake TLS fallito con {client_address[0]}: {e}", file=sys.stderr)
                return
        super().finish_request(request, client_address)


def create_ssl_context(cert_path, key_path):
    """Crea il contesto TLS lato server a partire dai file PEM"""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.load_cert_chain(certfile=cert_path, keyfile=key_path)
    return context


def build_server(config, ssl_context=None):
    """
    Crea il server HTTP che serve `config.directory`

    Args:
        config (ServerConfig): Configurazione già validata
        ssl_context (ssl.SSLContext, optional): Se presente il socket viene cifrato

    Returns:
        StaticHTTPServer: Server in ascolto, non ancora avviato
    """
    handler = functools.partial(SimpleHTTPRequestHandler, directory=config.directory)
    httpd = StaticHTTPServer((config.bind, config.port), handler)
    if ssl_context is not None:
        try:
            httpd.socket = ssl_context.wrap_socket(
                httpd.socket, server_side=True, do_handshake_on_connect=False
            )
        except Exception:
            httpd.server_close()
            raise
    return httpd


def server_url(httpd, scheme):
    host, port = httpd.server_address[:2]
    return f"{scheme}://{host}:{port}"


def serve(httpd, config):
    # il messaggio usa l'indirizzo realmente associato, dopo l'eventuale wrap TLS
    print(f"✅ Server in ascolto su {server_url(httpd, config.scheme)}")
    print(f"   Cartella servita: {config.directory}")
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        print("\nServer arrestato.")
    finally:
        httpd.server_close()


def run(config):
    """
    Avvia il server secondo la configurazione e blocca fino all'arresto

    In modalità sicura il certificato temporaneo vive solo per la durata del
    server e viene cancellato su ogni percorso di uscita.
    """
    config.validate()
    if not config.secure:
        serve(build_server(config), config)
        return

    with EphemeralIdentity() as (cert_path, key_path):
        with open(cert_path, "rb") as f:
            fingerprint = CertificateManager.fingerprint(f.read())
        print("✅ Certificato temporaneo generato per localhost / 127.0.0.1")
        print(f"   Impronta SHA-256: {fingerprint}")
        httpd = build_server(config, create_ssl_context(cert_path, key_path))
        serve(httpd, config)


def _handle_sigterm(signum, frame):
    # SystemExit risale lo stack e fa eseguire la pulizia del certificato
    raise SystemExit(0)


def main(argv=None):
    args = build_parser().parse_args(argv)
    config = ServerConfig.from_args(args)

    previous_handler = signal.signal(signal.SIGTERM, _handle_sigterm)
    try:
        run(config)
    except ConfigurationError as e:
        print(f"❌ Configurazione non valida: {e}", file=sys.stderr)
        return 1
    except CertificateGenerationError as e:
        print(f"❌ Impossibile avviare in HTTPS: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"❌ Impossibile avviare il server: {e}", file=sys.stderr)
        return 1
    finally:
        signal.signal(signal.SIGTERM, previous_handler)
    return 0


if __name__ == "__main__":
    sys.exit(main())
