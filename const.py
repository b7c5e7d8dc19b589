### auth
TOKEN_LENGTH = 32
TOKEN_TTL = 7 * 24 * 3600
TOKEN_KEY = 'token:%s:user'
BCRYPT_ROUNDS = 10

ROLE_USER = 'user'
ROLE_ADMIN = 'admin'

ORDER_STATUS_PENDING = 'pending'

### request errors
EMPTY_REQUEST = {'code': 'EMPTY_REQUEST', 'message': 'Request body is empty'}
MALFORMED_JSON = {'code': 'MALFORMED_JSON', 'message': 'Request body is not a valid JSON object'}
INTERNAL_ERROR = {'code': 'INTERNAL_ERROR', 'message': 'Something broke!'}

### error code for auth
MISSING_FIELDS = {'code': 'MISSING_FIELDS', 'message': 'All fields are required'}
EMAIL_EXISTS = {'code': 'EMAIL_EXISTS', 'message': 'Email already exists. Please use a different email or log in.'}
INVALID_CREDENTIALS = {'code': 'INVALID_CREDENTIALS', 'message': 'Invalid credentials'}
INVALID_ACCESS_TOKEN = {'code': 'INVALID_ACCESS_TOKEN', 'message': 'Invalid token or token expired. Please log in again.'}
PERMISSION_DENIED = {'code': 'PERMISSION_DENIED', 'message': 'You do not have permission to perform this action.'}

### error code for products
INVALID_PRODUCT = {'code': 'INVALID_PRODUCT', 'message': 'name, price and stock_quantity must be valid'}
PRODUCT_NOT_FOUND = {'code': 'PRODUCT_NOT_FOUND', 'message': 'Product not found'}
PRODUCT_IN_USE = {'code': 'PRODUCT_IN_USE', 'message': 'Product is referenced by existing orders'}

### error code for orders
INVALID_ORDER = {'code': 'INVALID_ORDER', 'message': 'Missing required order details: items, shippingAddress'}
INSUFFICIENT_STOCK = {'code': 'INSUFFICIENT_STOCK', 'message': 'Insufficient stock for product ID: %s'}

### column limits (INT, DECIMAL(10,2), DECIMAL(12,2))
MAX_INT = 2 ** 31 - 1
MAX_PRICE = 99999999.99
MAX_ORDER_TOTAL = 9999999999.99
ORDER_TOO_LARGE = {'code': 'ORDER_TOO_LARGE', 'message': 'Order total exceeds the allowed maximum'}

### routing errors
NOT_FOUND = {'code': 'NOT_FOUND', 'message': 'Resource not found'}
METHOD_NOT_ALLOWED = {'code': 'METHOD_NOT_ALLOWED', 'message': 'Method not allowed'}
