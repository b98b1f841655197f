# 导入套餐模型
from .user_plan import UserPlan
# 导入每日 token 用量模型
from .token_usage import TokenUsage
# 导入基础模型
from .base import *
