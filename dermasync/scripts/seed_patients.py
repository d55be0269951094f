"""Seed the store with mock dermatology patients for a demo account."""

import argparse
import asyncio
import random

from dermasync.auth import LocalAuthProvider
from dermasync.cipher_box import CipherBox
from dermasync.config import Settings, setup_logging
from dermasync.errors import AuthenticationError
from dermasync.key_store import FileSecureStorage, KeyStore
from dermasync.models import Medication, PatientRecord
from dermasync.reachability import ReachabilityMonitor
from dermasync.record_codec import RecordCodec
from dermasync.repository import PatientRepository
from dermasync.store import SqliteDocumentStore

SKIN_CONDITIONS = {
    "Acne Vulgaris": {
        "symptoms": ["inflammatory papules", "pustules", "comedones", "oily skin", "facial redness"],
        "medications": ["Benzoyl Peroxide", "Tretinoin", "Clindamycin", "Isotretinoin", "Doxycycline"],
    },
    "Atopic Dermatitis": {
        "symptoms": ["dry itchy skin", "redness", "inflammation", "scaling", "cracking"],
        "medications": ["Topical Corticosteroids", "Tacrolimus", "Pimecrolimus", "Dupixent", "Antihistamines"],
    },
    "Psoriasis": {
        "symptoms": ["thick red patches", "silvery scales", "dry cracked skin", "itching", "burning"],
        "medications": ["Methotrexate", "Cyclosporine", "Adalimumab", "Topical Steroids", "Vitamin D Analogs"],
    },
    "Rosacea": {
        "symptoms": ["facial redness", "visible blood vessels", "bumps", "skin sensitivity", "burning sensation"],
        "medications": ["Metronidazole", "Azelaic Acid", "Ivermectin", "Brimonidine", "Doxycycline"],
    },
    "Seborrheic Dermatitis": {
        "symptoms": ["scaly patches", "redness", "dandruff", "itching", "greasy skin"],
        "medications": ["Ketoconazole", "Zinc Pyrithione", "Selenium Sulfide", "Hydrocortisone", "Antifungal Creams"],
    },
    "Contact Dermatitis": {
        "symptoms": ["red rash", "itching", "burning", "blisters", "skin tenderness"],
        "medications": ["Hydrocortisone", "Calamine Lotion", "Oral Antihistamines", "Topical Steroids", "Moisturizers"],
    },
}

FIRST_NAMES = ["John", "Sarah", "Michael", "Emily", "David", "Maria", "James", "Aisha", "Wei", "Laura"]
LAST_NAMES = ["Smith", "Johnson", "Chen", "Davis", "Garcia", "Patel", "Brown", "Nguyen", "Wilson", "Lopez"]
DOSAGES = ["0.025%", "0.05%", "0.1%", "2.5%", "5%", "10 mg", "20 mg", "50 mg", "100 mg"]
FREQUENCIES = ["Once daily", "Twice daily", "Every other day", "Weekly", "As needed"]


def generate_patients(count: int, rng: random.Random | None = None) -> list[PatientRecord]:
    """Random patients with one condition each and one or two medications."""
    rng = rng or random.Random()
    patients = []
    for i in range(count):
        condition = rng.choice(list(SKIN_CONDITIONS))
        details = SKIN_CONDITIONS[condition]
        symptoms = rng.sample(details["symptoms"], k=rng.randint(2, 3))
        medications = [
            Medication(name, rng.choice(DOSAGES), rng.choice(FREQUENCIES))
            for name in rng.sample(details["medications"], k=rng.randint(1, 2))
        ]
        patients.append(PatientRecord(
            name=f"{rng.choice(FIRST_NAMES)} {rng.choice(LAST_NAMES)} {i + 1}",
            diagnosis_notes=f"Patient presents with {', '.join(symptoms)}",
            medications=medications,
        ))
    return patients


async def seed(settings: Settings, email: str, password: str, count: int, seed_value: int | None) -> int:
    provider = LocalAuthProvider(settings.db_path)
    try:
        identity = await provider.sign_in(email, password)
        print(f"Signed in as {email}")
    except AuthenticationError:
        identity = await provider.sign_up(email, password)
        print(f"Created account {email}")

    cipher = CipherBox(KeyStore(FileSecureStorage(settings.key_dir)).load_or_create())
    store = SqliteDocumentStore(settings.db_path)
    repository = PatientRepository(
        store,
        RecordCodec(cipher),
        ReachabilityMonitor(settings.reachability_url),
        write_timeout=settings.write_timeout,
        add_timeout=settings.add_timeout,
    )

    print("Creating mock patients...")
    patients = generate_patients(count, random.Random(seed_value))
    for patient in patients:
        await repository.add_patient(identity, patient)
        print(f"  Created {patient.name}")
    await store.wait_for_pending_writes()

    print("\nStore seeded successfully!")
    print(f"  - {len(patients)} patients")
    return len(patients)


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--email", default="demo@dermasync.local")
    parser.add_argument("--password", default="demo-password")
    parser.add_argument("--count", type=int, default=10)
    parser.add_argument("--seed", type=int, default=None, help="Random seed for repeatable data")
    args = parser.parse_args()

    settings = Settings.from_env()
    setup_logging(settings.log_level)
    asyncio.run(seed(settings, args.email, args.password, args.count, args.seed))


if __name__ == "__main__":
    main()
