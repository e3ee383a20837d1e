import argparse
import os
import sys
import logging

from fenv_crypto import (
    generate_rsa_keys,
    load_public_key,
    load_public_key_file,
    load_private_key_file,
    export_hardware_public_key,
    encrypt_file as module_encrypt_file,
    decrypt_file as module_decrypt_file,
    encrypt_folder as module_encrypt_folder,
    FenvError,
    DEFAULT_PKCS11_LIB,
)

log = logging.getLogger('fenv')

# Path to the PKCS11 library
PKCS11_LIB = DEFAULT_PKCS11_LIB
# Default RSA Public Key file path
RSA_default_public_key_path = '~/.ssh/public_rsa.pem'
RSA_default_public_key = os.path.expanduser(RSA_default_public_key_path)


def _load_recipient(args):
    if args.hardware_key:
        return load_public_key(export_hardware_public_key(PKCS11_LIB))
    return load_public_key_file(args.keyfile)


def _encrypt_folder_cli(args, public_key):
    result = module_encrypt_folder(
        args.dir,
        public_key,
        output_folder=args.output,
        recursive=args.recursive,
        max_workers=args.workers,
        nit=args.nit,
        doc_type=args.doc_type,
    )
    for outcome in result.outcomes:
        if outcome.ok:
            print(f"  ok     {outcome.name}")
        else:
            print(f"  failed {outcome.name}: {type(outcome.error).__name__}: {outcome.error}")
    print(f"Folder '{args.dir}': {result.summary()}")
    return 0 if result.failed == 0 else 1


def build_parser():
    parser = argparse.ArgumentParser(description="RSA-OAEP + AES-256-CBC file envelope encryption tool")

    action_group = parser.add_mutually_exclusive_group()
    action_group.add_argument('-e', '--encrypt', action='store_true', help='Encrypt file or folder into .enc/.key pairs')
    action_group.add_argument('-d', '--decrypt', action='store_true', help='Decrypt an .enc/.key pair')

    parser.add_argument('--dir', help='Encrypt all files in folder')

    key_group = parser.add_mutually_exclusive_group()
    key_group.add_argument('-i', '--keyfile', help=f'RSA key file (SPKI public key for encryption, private key for decryption), Default:{RSA_default_public_key_path}')
    key_group.add_argument('-k', '--hardware-key', action='store_true', help='Use hardware key for encryption/decryption')

    parser.add_argument('file', nargs='?', help='File to encrypt, or .enc file to decrypt')
    parser.add_argument('--key', dest='wrapped_key', help='Wrapped .key file for decryption (default: next to the .enc file)')

    parser.add_argument('-o', '--output', help='Output directory (encrypt) or file (decrypt)')
    parser.add_argument('--nit', help='NIT label prefixed to output names (needs --doc-type)')
    parser.add_argument('--doc-type', help='Document type label prefixed to output names (needs --nit)')

    parser.add_argument('-r', '--recursive', action='store_true', help='Recursively encrypt subdirectories')
    parser.add_argument('-w', '--workers', type=int, default=4, help='Number of worker threads for parallel processing')

    parser.add_argument('--genrsakey', action='store_true', help='Generate RSA key pair')
    parser.add_argument('--key-size', type=int, default=4096, help='RSA modulus size for --genrsakey')
    parser.add_argument('--export-hardware-key', action='store_true', help='Write the hardware token public key as PEM to -o')

    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(asctime)s - %(levelname)s - %(message)s')

    # Parameter validation
    if (args.genrsakey or args.export_hardware_key) and not args.output:
        parser.error("--genrsakey and --export-hardware-key require -o to specify the output file.")
    if bool(args.nit) != bool(args.doc_type):
        parser.error("--nit and --doc-type must be given together.")

    if args.encrypt or args.decrypt:
        if not (args.file or (args.encrypt and args.dir)):
            parser.error("-e or -d requires a file to encrypt or decrypt.")
        if not (args.keyfile or args.hardware_key):
            if args.encrypt and os.path.exists(RSA_default_public_key):
                args.keyfile = RSA_default_public_key
            else:
                parser.error("-e or -d requires either -i (key file) or -k (hardware key).")

    try:
        if args.genrsakey:
            priv, pub = generate_rsa_keys(args.output, key_size=args.key_size)
            print(f"RSA keys saved to '{priv}' and '{pub}'")
        elif args.export_hardware_key:
            pem = export_hardware_public_key(PKCS11_LIB)
            with open(args.output, 'x') as f_out:
                f_out.write(pem)
            print(f"Hardware public key saved to '{args.output}'")
        elif args.encrypt and args.dir:
            return _encrypt_folder_cli(args, _load_recipient(args))
        elif args.encrypt:
            enc_path, key_path = module_encrypt_file(
                args.file, args.output,
                public_key=_load_recipient(args), nit=args.nit, doc_type=args.doc_type,
            )
            print(f"File '{args.file}' successfully encrypted to '{enc_path}' and '{key_path}'")
        elif args.decrypt:
            if args.hardware_key:
                out = module_decrypt_file(args.file, args.wrapped_key, args.output,
                                          use_hardware_key=True, pkcs11_lib=PKCS11_LIB)
            else:
                out = module_decrypt_file(args.file, args.wrapped_key, args.output,
                                          private_key=load_private_key_file(args.keyfile))
            print(f"File '{args.file}' successfully decrypted to '{out}'")
        else:
            parser.print_help()
    except (FenvError, ValueError, OSError, ImportError) as e:
        log.debug("Operation failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
