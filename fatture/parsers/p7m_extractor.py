"""
Estrazione del contenuto XML da file FatturaPA firmati (P7M, PKCS#7/CMS).

Il modulo espone una sola funzione pubblica, ``extract_xml(buffer, extension)``,
che restituisce il testo XML pronto per il parser.

Strategie, nell'ordine (ci si ferma alla prima che produce XML):
1. busta firmata in codifica binaria (DER) sbustata con ``openssl smime``
2. stessa struttura in formato PEM (solo se il buffer contiene l'armatura ``-----BEGIN``)
3. scansione dei byte: si cerca la dichiarazione XML (o il tag root della fattura)
   e l'ultimo tag di chiusura noto, provando piu' codifiche di testo

Non viene verificata la validità della firma: serve solo recuperare il contenuto.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import re
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import List, Optional

from fatture.errors import ExtractionError

logger = logging.getLogger(__name__)

PLAIN_XML_EXTENSION = "xml"

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'

# Tag root riconosciuti (fattura ordinaria e semplificata), con o senza prefisso
_ROOT_OPEN_RE = re.compile(rb"<(?:[A-Za-z_][\w.-]*:)?FatturaElettronica(?:Semplificata)?[\s>]")
_ROOT_CLOSE_RE = re.compile(rb"</(?:[A-Za-z_][\w.-]*:)?FatturaElettronica(?:Semplificata)?\s*>")
_ROOT_TEXT_RE = re.compile(r"<(?:[A-Za-z_][\w.-]*:)?FatturaElettronica(?:Semplificata)?[\s>]")
_ROOT_PREFIX_RE = re.compile(r"<([A-Za-z_][\w.-]*):FatturaElettronica(?:Semplificata)?[\s>]")
_DECLARED_ENCODING_RE = re.compile(r"""^(\ufeff?\s*<\?xml\b[^>]*?\bencoding\s*=\s*)(["'])[^"']*\2""")

# Codifiche provate sullo slice grezzo, in ordine
_SCAN_ENCODINGS = ("utf-8", "latin-1", "ascii")

_BASE64_ALLOWED = frozenset(
    b"ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/=\r\n"
)


def extract_xml(buffer: bytes, extension: str, *, openssl_bin: Optional[str] = None) -> str:
    """
    Restituisce il testo XML contenuto in ``buffer``.

    :param buffer: contenuto grezzo del file caricato
    :param extension: estensione dichiarata (``xml`` oppure ``p7m``)
    :param openssl_bin: eseguibile openssl da usare (default: env ``OPENSSL_BIN`` o PATH)
    :raises ExtractionError: se nessuna strategia restituisce un XML riconoscibile
    """
    if (extension or "").lower().lstrip(".") == PLAIN_XML_EXTENSION:
        return _decode_plain_xml(buffer)

    for inform in ("DER", "PEM"):
        if inform == "PEM" and b"-----BEGIN" not in buffer:
            continue
        content = _unwrap_signed_data(buffer, inform, openssl_bin=openssl_bin)
        if content is None:
            continue
        text = _decode_first(content)
        if text is not None and _looks_like_xml(text):
            logger.debug(
                "XML estratto da busta firmata",
                extra={"component": "p7m_extractor", "strategy": inform},
            )
            return clean_xml_text(text)

    text = _scan_for_xml(buffer)
    if text is not None:
        logger.warning(
            "XML estratto con scansione dei byte (struttura P7M non leggibile)",
            extra={"component": "p7m_extractor", "strategy": "byte_scan", "size": len(buffer)},
        )
        return clean_xml_text(text)

    raise ExtractionError(
        "Impossibile estrarre l'XML dal file P7M con tutti i metodi disponibili: "
        f"il file potrebbe essere corrotto o in un formato non supportato "
        f"(size={len(buffer)}, head_bytes={buffer[:32]!r})"
    )


# =========================
#  XML in chiaro
# =========================


def _decode_plain_xml(buffer: bytes) -> str:
    try:
        return _declare_utf8(buffer.decode("utf-8"))
    except UnicodeDecodeError:
        pass

    # XML dichiarato UTF-8 ma scritto in cp1252/latin-1 (caso frequente nei gestionali)
    for encoding in ("cp1252", "latin-1"):
        try:
            text = buffer.decode(encoding)
        except UnicodeDecodeError:
            continue
        logger.warning(
            "XML non UTF-8: applicato fallback di decodifica",
            extra={"component": "p7m_extractor", "fallback_encoding": encoding},
        )
        return _declare_utf8(text)
    raise ExtractionError("XML non decodificabile come testo")


def _declare_utf8(text: str) -> str:
    """Allinea la dichiarazione a UTF-8, la codifica con cui il testo viene salvato."""
    return _DECLARED_ENCODING_RE.sub(r"\1\2UTF-8\2", text, count=1)


# =========================
#  Strategie strutturali (openssl)
# =========================


def _resolve_openssl(openssl_bin: Optional[str]) -> Optional[str]:
    return openssl_bin or os.environ.get("OPENSSL_BIN") or shutil.which("openssl")


def _unwrap_signed_data(buffer: bytes, inform: str, *, openssl_bin: Optional[str] = None) -> Optional[bytes]:
    """
    Sbusta la struttura SignedData con ``openssl smime -verify -noverify``.

    Restituisce il contenuto incapsulato, oppure None se openssl non è disponibile
    o non riconosce la struttura nel formato indicato.
    """
    binary = _resolve_openssl(openssl_bin)
    if not binary:
        return None

    in_path = out_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".p7m", delete=False) as tmp_in:
            tmp_in.write(buffer)
            in_path = tmp_in.name
        with tempfile.NamedTemporaryFile(suffix=".xml", delete=False) as tmp_out:
            out_path = tmp_out.name

        result = _run_openssl(
            [
                binary,
                "smime",
                "-verify",
                "-noverify",
                "-binary",
                "-inform",
                inform,
                "-in",
                in_path,
                "-out",
                out_path,
            ]
        )
        if result.returncode != 0:
            logger.debug(
                "openssl non ha riconosciuto la busta",
                extra={"component": "p7m_extractor", "strategy": inform, "stderr": result.stderr[-300:]},
            )
            return None
        data = Path(out_path).read_bytes()
        return data or None
    except OSError as exc:
        logger.debug(
            "Esecuzione openssl fallita",
            extra={"component": "p7m_extractor", "strategy": inform, "error": str(exc)},
        )
        return None
    finally:
        for path in (in_path, out_path):
            if path:
                Path(path).unlink(missing_ok=True)


def _run_openssl(args: List[str]) -> subprocess.CompletedProcess:
    return subprocess.run(args, capture_output=True, text=True, timeout=30)


# =========================
#  Fallback: scansione dei byte
# =========================


def _is_base64ish(buf: bytes) -> bool:
    return bool(buf) and all(b in _BASE64_ALLOWED for b in buf)


def _decode_base64(buf: bytes) -> Optional[bytes]:
    cleaned = b"".join(buf.split())
    missing_padding = len(cleaned) % 4
    if missing_padding:
        cleaned += b"=" * (4 - missing_padding)
    try:
        return base64.b64decode(cleaned, validate=False)
    except (binascii.Error, ValueError):
        return None


def _scan_for_xml(buffer: bytes) -> Optional[str]:
    """Cerca l'XML direttamente nei byte (anche dopo decodifica base64, se il file è testo base64)."""
    candidates = [buffer]
    if _is_base64ish(buffer):
        decoded = _decode_base64(buffer)
        if decoded:
            candidates.insert(0, decoded)

    for data in candidates:
        start = _find_xml_start(data)
        if start < 0:
            continue
        end = _find_xml_end(data, start)
        if end <= start:
            continue

        chunk = data[start:end]
        for encoding in _SCAN_ENCODINGS:
            try:
                text = chunk.decode(encoding)
            except UnicodeDecodeError:
                continue
            if _looks_like_xml(text):
                return text
    return None


def _find_xml_start(data: bytes) -> int:
    """
    Offset di inizio dell'XML: prima la dichiarazione ``<?xml``, altrimenti il
    tag di apertura della root (con o senza prefisso).
    """
    pos = data.find(b"<?xml")
    if pos >= 0:
        return pos
    match = _ROOT_OPEN_RE.search(data)
    return match.start() if match else -1


def _find_xml_end(data: bytes, start: int) -> int:
    """Offset di fine: l'ultimo tag di chiusura della root successivo a ``start``."""
    end = -1
    for match in _ROOT_CLOSE_RE.finditer(data, start):
        end = match.end()
    return end


# =========================
#  Pulizia
# =========================


def clean_xml_text(text: str) -> str:
    """
    Ripulisce l'XML estratto:
    - rimuove byte NUL e caratteri di controllo non ammessi
    - rimuove il prefisso del namespace della root (es. ``p:``) e la sua dichiarazione
    - aggiunge la dichiarazione XML se assente
    """
    text = "".join(ch for ch in text if ch in "\t\n\r" or ord(ch) >= 0x20)
    text = text.lstrip("\ufeff")

    match = _ROOT_PREFIX_RE.search(text)
    if match:
        prefix = re.escape(match.group(1))
        text = re.sub(rf"<(/?){prefix}:", r"<\1", text)
        text = re.sub(rf"\s+xmlns:{prefix}\s*=\s*(\"[^\"]*\"|'[^']*')", "", text)

    text = text.strip()
    if not text.startswith("<?xml"):
        text = f"{XML_DECLARATION}\n{text}"
    return _declare_utf8(text)


def _decode_first(content: bytes) -> Optional[str]:
    for encoding in _SCAN_ENCODINGS:
        try:
            return content.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def _looks_like_xml(text: str) -> bool:
    return "<?xml" in text or _ROOT_TEXT_RE.search(text) is not None
