from pathlib import Path
import os

from dotenv import load_dotenv

root = Path(__file__).resolve().parents[1]
load_dotenv(root / ".env", override=False)

print('Project root:', root)
print('Package:', root.joinpath('portraitbook'))

required = ['REPLICATE_API_TOKEN', 'REPLICATE_OWNER', 'GEMINI_API_KEY']
optional = ['USE_INPAINTING', 'TRAINING_RECORDS_PATH', 'CF_ACCOUNT_ID', 'CF_ACCESS_KEY_ID', 'CF_SECRET_ACCESS_KEY']

print('\nRequired settings:')
for name in required:
    print(' -', name, 'set' if os.getenv(name) else 'MISSING')
print('\nOptional settings:')
for name in optional:
    print(' -', name, 'set' if os.getenv(name) else 'not set')

missing = [name for name in required if not os.getenv(name)]
print('\nReady to run:', not missing)
print('\nTo start the API: python -m portraitbook.main')
