from flask_bcrypt import Bcrypt
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# ============================================
# 擴展物件 (在 create_app 裡 init_app)
# ============================================

jwt = JWTManager()
bcrypt = Bcrypt()
cors = CORS()

# Rate Limiting
# storage 由 RATELIMIT_STORAGE_URI 決定 (開發環境用記憶體,production 用 Redis)
limiter = Limiter(key_func=get_remote_address)
