import os, json, sys
from medgate.signing import AuditSigner, generate_identity_keys

admin_id = sys.argv[1] if len(sys.argv) > 1 else "admin"

os.makedirs("secrets", exist_ok=True)
os.makedirs("config", exist_ok=True)

signer = AuditSigner.generate(kid="medgate-audit-01")
with open("secrets/audit_signing_key.json", "w", encoding="utf-8") as f:
    json.dump(signer.to_key_file(), f, indent=2)

admin = generate_identity_keys()
admin["user_id"] = admin_id
with open(f"secrets/{admin_id}_keys.json", "w", encoding="utf-8") as f:
    json.dump(admin, f, indent=2)

bootstrap = {
    "identities": [
        {
            "user_id": admin_id,
            "role": "system_admin",
            "public_keys": {
                "signing_key": admin["signing_key"],
                "encryption_key": admin["encryption_key"],
            },
        }
    ]
}
with open("config/bootstrap.json", "w", encoding="utf-8") as f:
    json.dump(bootstrap, f, indent=2)

print("Generated audit signing key, admin keys and config/bootstrap.json.")
print(f"Audit public key: {signer.public_key_b64}")
print("Set AUDIT_SIGNING_KEY_PATH=secrets/audit_signing_key.json BOOTSTRAP_PATH=config/bootstrap.json")
