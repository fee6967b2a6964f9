from .secretbox import (
    KEY_SCHEMES,
    ZERO_NONCE,
    Signer,
    derive_key,
    derive_agreement_key,
    request_key_signature,
    personal_message,
    typed_message,
    encrypt,
    decrypt,
    )
