"""Funciones de seguridad: manejo de JWT.

Se utiliza PyJWT para el token bearer de operadores (endpoint manual del relay)
y para los tokens de liberación de imagen, que expiran en el servidor.
"""

from datetime import datetime, timedelta, timezone

import jwt

from config import get_settings
from errors import ErrorKind, RelayError

settings = get_settings()

RELEASE_AUDIENCE = 'voucher-image'


# create_token: Crea un JWT con sujeto y rol, expirando en minutos configurados.
def create_token(sub: str, role: str):
    exp = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_exp_minutes)
    payload = {"sub": sub, "role": role, "exp": exp}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


# decode_token: Decodifica el JWT y retorna payload o None si inválido/expirado.
def decode_token(token: str):
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        return None


# create_release_token: Token de un solo uso para descargar la imagen de una orden.
def create_release_token(order_id: str, release_id: str, holder: str, ttl_seconds: int):
    now = datetime.now(timezone.utc)
    exp = now + timedelta(seconds=ttl_seconds)
    payload = {
        "sub": holder,
        "oid": order_id,
        "jti": release_id,
        "aud": RELEASE_AUDIENCE,
        "iat": now,
        "exp": exp,
    }
    token = jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return token, exp.replace(tzinfo=None)


# decode_release_token: Valida firma y expiración; la expiración es definitiva.
def decode_release_token(token: str) -> dict:
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=RELEASE_AUDIENCE,
        )
    except jwt.ExpiredSignatureError as e:
        raise RelayError(ErrorKind.RELEASE_EXPIRED, 'Image release window has expired') from e
    except jwt.PyJWTError as e:
        raise RelayError(ErrorKind.IMAGE_NOT_AVAILABLE, 'Invalid image release token') from e
