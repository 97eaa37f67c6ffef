"""Record storage.

Layout:
    <data_dir>/
    ├── .scopes/custom-scopes.json     # custom scope definitions
    ├── .security/otp-config.json      # OTP secret, settings, backup codes
    ├── public/
    │   └── name.md                    # <category>.md
    ├── contact/
    │   ├── phone.md
    │   └── phone-work.md              # <category>-<subcategory>.md
    └── memories/
        └── trip-2026-10-18T09-30-00.md  # time-based variant

Each record is UTF-8 markdown with YAML frontmatter, or, when encryption is
on, a single JSON document holding the encrypted markdown.
"""
