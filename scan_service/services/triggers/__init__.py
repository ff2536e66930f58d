"""
触发层（Triggers）

不同入口（手动触发、GitHub webhook、定时器）负责把外部事件交给 TriggerScheduler 归一化为
RunRequest，并委托 TriggerService 统一完成：幂等、创建运行、启动后台执行、写入 RunStore。
"""
